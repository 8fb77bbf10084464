"""Parsers for git's machine-readable output, shared by both backends."""

import re

from gitdock.git.models import (
    AheadBehind,
    BranchSummary,
    Commit,
    CommitFile,
    FileEntry,
    RemoteInfo,
    RepositoryStatus,
    StashEntry,
    StashInfo,
)

FIELD_SEP = "\x1f"
RECORD_SEP = "\x1e"

# git log --format for parse_log (hash, ISO date, name, email, subject, body, refs)
LOG_FORMAT = "%H%x1f%aI%x1f%an%x1f%ae%x1f%s%x1f%b%x1f%D%x1e"
STASH_LIST_FORMAT = "%H%x1f%gd%x1f%gs"
LOCAL_BRANCH_FORMAT = "%(HEAD)%(refname:short)"

_AB_RE = re.compile(r"\[(?:ahead (\d+))?(?:, )?(?:behind (\d+))?\]")
_STASH_REF_RE = re.compile(r"stash@\{(\d+)\}")
_URL_RE = re.compile(r"https?://\S+")


def parse_branch_header(line: str) -> tuple[str, str | None, int, int]:
    """Parse a porcelain v1 ``## ...`` header into (branch, upstream, ahead, behind)."""
    header = line[3:] if line.startswith("## ") else line
    header = header.removesuffix(" [gone]")
    ahead = behind = 0
    match = _AB_RE.search(header)
    if match:
        ahead = int(match.group(1) or 0)
        behind = int(match.group(2) or 0)
        header = header[: match.start()].rstrip()

    for prefix in ("No commits yet on ", "Initial commit on "):
        if header.startswith(prefix):
            return header[len(prefix) :], None, 0, 0
    if header.startswith("HEAD (no branch)"):
        return "HEAD", None, 0, 0

    if "..." in header:
        branch, tracking = header.split("...", 1)
        return branch, tracking or None, ahead, behind
    return header, None, ahead, behind


def parse_porcelain_status(output: str) -> RepositoryStatus:
    """Parse ``git status --porcelain=v1 -z --branch`` output."""
    branch = ""
    tracking = None
    ahead = behind = 0
    files: list[FileEntry] = []

    entries = output.split("\0")
    i = 0
    while i < len(entries):
        entry = entries[i]
        i += 1
        if not entry:
            continue
        if entry.startswith("## "):
            branch, tracking, ahead, behind = parse_branch_header(entry)
            continue
        if len(entry) < 4:
            continue
        x, y, path = entry[0], entry[1], entry[3:]
        orig_path = None
        # Renames and copies carry the source path as the next NUL entry
        if x in "RC" or y in "RC":
            if i < len(entries):
                orig_path = entries[i] or None
                i += 1
        files.append(
            FileEntry(
                path=path,
                index_state=x,
                working_tree_state=y,
                orig_path=orig_path,
            )
        )

    return RepositoryStatus(
        current_branch=branch,
        files=files,
        tracking=tracking,
        ahead=ahead,
        behind=behind,
    )


def parse_local_branches(output: str) -> list[BranchSummary]:
    """Parse ``git for-each-ref --format=%(HEAD)%(refname:short) refs/heads``."""
    branches: list[BranchSummary] = []
    for line in output.splitlines():
        if len(line) < 2:
            continue
        marker, name = line[0], line[1:].strip()
        if not name:
            continue
        branches.append(BranchSummary(name=name, is_current=marker == "*"))
    return branches


def parse_remote_branches(output: str) -> list[str]:
    names: list[str] = []
    for line in output.splitlines():
        name = line.strip()
        # Symbolic remote HEADs show up as "origin/HEAD" or bare "origin"
        if not name or name.endswith("/HEAD") or "/" not in name:
            continue
        names.append(name)
    return names


def parse_ahead_behind(output: str) -> AheadBehind:
    """Parse ``git rev-list --left-right --count A...B`` (left = ahead)."""
    parts = output.split()
    if len(parts) != 2:
        return AheadBehind.unknown()
    try:
        return AheadBehind(ahead=int(parts[0]), behind=int(parts[1]))
    except ValueError:
        return AheadBehind.unknown()


def parse_remotes(output: str) -> list[RemoteInfo]:
    """Parse ``git remote -v``, keeping one entry (the fetch URL) per remote."""
    remotes: dict[str, RemoteInfo] = {}
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 2:
            continue
        name, url = parts[0], parts[1]
        kind = parts[2] if len(parts) > 2 else "(fetch)"
        if name not in remotes or kind == "(fetch)":
            remotes[name] = RemoteInfo(name=name, url=url)
    return list(remotes.values())


def parse_stash_list(output: str) -> list[StashEntry]:
    stashes: list[StashEntry] = []
    for position, line in enumerate(output.splitlines()):
        if not line.strip():
            continue
        parts = line.split(FIELD_SEP, 2)
        if len(parts) != 3:
            continue
        stash_hash, ref, message = parts
        match = _STASH_REF_RE.search(ref)
        index = int(match.group(1)) if match else position
        stashes.append(StashEntry(index=index, message=message, hash=stash_hash or None))
    return stashes


def parse_log(
    output: str, *, unpushed: set[str] | None = None, all_on_origin: bool = False
) -> list[Commit]:
    """Parse records produced with ``LOG_FORMAT``.

    A commit is on origin when ``all_on_origin`` is set, or when an
    ``unpushed`` set is given and the hash is not in it.
    """
    commits: list[Commit] = []
    for record in output.split(RECORD_SEP):
        record = record.strip("\n")
        if not record:
            continue
        parts = record.split(FIELD_SEP)
        if len(parts) < 6:
            continue
        commit_hash, date, name, email, subject, body = parts[:6]
        refs = parts[6] if len(parts) > 6 else ""
        if all_on_origin:
            on_origin = True
        elif unpushed is None:
            on_origin = False
        else:
            on_origin = commit_hash not in unpushed
        commits.append(
            Commit(
                hash=commit_hash,
                date=date,
                author_name=name,
                author_email=email,
                subject=subject,
                body=body.strip(),
                on_origin=on_origin,
                tags=parse_tag_decorations(refs),
            )
        )
    return commits


def parse_tag_decorations(refs: str) -> list[str]:
    return [
        ref.strip()[len("tag: ") :]
        for ref in refs.split(",")
        if ref.strip().startswith("tag: ")
    ]


def parse_name_status(output: str) -> list[CommitFile]:
    """Parse ``git diff-tree --name-status`` lines; renames report the new path."""
    files: list[CommitFile] = []
    for line in output.splitlines():
        parts = line.split("\t")
        if len(parts) < 2:
            continue
        files.append(CommitFile(status=parts[0][:1], path=parts[-1]))
    return files


def parse_stash_show(output: str, index: int, files: list[str]) -> StashInfo:
    """Parse commit-style ``git show stash@{n}`` output into a StashInfo."""
    fields = {"hash": "", "author": "", "date": "", "merge": "", "message": ""}
    for line in output.splitlines():
        if line.startswith("commit ") and not fields["hash"]:
            fields["hash"] = line[len("commit ") :].strip()
        elif line.startswith("Author: "):
            fields["author"] = line[len("Author: ") :].strip()
        elif line.startswith("Date: "):
            fields["date"] = line[len("Date: ") :].strip()
        elif line.startswith("Merge: "):
            fields["merge"] = line[len("Merge: ") :].strip()
        elif line.startswith("    ") and not fields["message"]:
            text = line.strip()
            # "On main: message" / "WIP on main: abc123 subject"
            fields["message"] = text.split(":", 1)[1].strip() if ":" in text else text
    return StashInfo(
        stash_ref=f"stash@{{{index}}}",
        index=index,
        output=output,
        files=files,
        total_files=len(files),
        **fields,
    )


def parse_name_only(output: str) -> list[str]:
    return [line for line in output.splitlines() if line.strip()]


def chunk_paths(
    paths: list[str], *, max_paths: int = 100, max_chars: int = 8000
) -> list[list[str]]:
    """Split paths into batches that respect command-line length limits."""
    batches: list[list[str]] = []
    current: list[str] = []
    size = 0
    for path in paths:
        cost = len(path) + 1
        if current and (len(current) >= max_paths or size + cost > max_chars):
            batches.append(current)
            current, size = [], 0
        current.append(path)
        size += cost
    if current:
        batches.append(current)
    return batches


def extract_urls(text: str) -> list[str]:
    """Return URLs found in tool output (e.g. pull-request links printed by push)."""
    return [url.rstrip(".,)") for url in _URL_RE.findall(text)]

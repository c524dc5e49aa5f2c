"""
mgit_server/repos.py

Read-only view of the repositories under REPOS_PATH.

Layout: <REPOS_PATH>/<owner>/<repo>/.mgit  (one mgit working copy per repo).

Everything history-related is delegated to the `mgit` CLI (git-compatible
log/show/branch). The only thing read directly is `.mgit/nostr_mappings.json`,
which maps git commit hashes to mgit hashes and the Nostr pubkey that signed
the commit:

    [{"GitHash": "...", "MGitHash": "...", "Pubkey": "..."}, ...]

Helpers that only decorate a response (dates, license, last commit) log and
fall back instead of failing the request.
"""

import base64
import json
import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

BINARY_EXTENSIONS = {
    ".jpg", ".jpeg", ".png", ".gif", ".bmp", ".ico", ".pdf", ".doc", ".docx",
    ".xls", ".xlsx", ".ppt", ".pptx", ".zip", ".rar", ".gz", ".tar", ".bin",
    ".exe", ".dll", ".so", ".o", ".class",
}

LICENSE_FILES = ("LICENSE", "LICENSE.md", "LICENSE.txt")

# field separator for --format output; commit subjects may contain "|"
SEP = "\x1f"


class RepoError(Exception):
    pass


class InvalidPath(RepoError):
    pass


class RepoNotFound(RepoError):
    pass


class CommitNotFound(RepoError):
    pass


def validate_path(value: str, *, allow_empty: bool = True) -> str:
    """
    Reject anything that could leave the repository directory:
    absolute paths, '..' segments, backslashes, NUL.
    """
    value = value or ""
    if not value:
        if allow_empty:
            return ""
        raise InvalidPath("empty path")
    if "\x00" in value or "\\" in value or value.startswith("/"):
        raise InvalidPath(value)
    if any(part == ".." for part in PurePosixPath(value).parts):
        raise InvalidPath(value)
    return value


def _iso(ts: str) -> str:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc).isoformat().replace("+00:00", "Z")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class MGitRepos:
    def __init__(self, root: Path, mgit_bin: str = "mgit", timeout: float = 15.0):
        self.root = Path(root)
        self.mgit_bin = mgit_bin
        self.timeout = timeout

    # -------------------------------------------------------------------------
    # plumbing
    # -------------------------------------------------------------------------
    def _run(self, repo: Path, *args: str, text: bool = True):
        proc = subprocess.run(
            [self.mgit_bin, *args],
            cwd=repo,
            capture_output=True,
            check=True,
            timeout=self.timeout,
            text=text,
        )
        return proc.stdout

    def repo_path(self, owner: str, repo: str) -> Path:
        validate_path(owner, allow_empty=False)
        validate_path(repo, allow_empty=False)
        path = self.root / owner / repo
        if not (path / ".mgit").is_dir():
            raise RepoNotFound(f"{owner}/{repo}")
        return path

    def _mappings(self, repo: Path) -> List[Dict[str, Any]]:
        mappings_path = repo / ".mgit" / "nostr_mappings.json"
        if not mappings_path.exists():
            return []
        try:
            data = json.loads(mappings_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.exception("repos.mappings_unreadable path=%s", mappings_path)
            return []
        return data if isinstance(data, list) else []

    def _mapping_for(self, repo: Path, git_hash: str) -> Dict[str, Any]:
        for m in self._mappings(repo):
            if isinstance(m, dict) and m.get("GitHash") == git_hash:
                return m
        return {}

    # -------------------------------------------------------------------------
    # repository metadata
    # -------------------------------------------------------------------------
    def default_branch(self, repo: Path) -> str:
        head = repo / ".mgit" / "HEAD"
        try:
            content = head.read_text(encoding="utf-8").strip()
        except OSError:
            return "main"
        prefix = "ref: refs/heads/"
        if content.startswith(prefix) and len(content) > len(prefix):
            return content[len(prefix):]
        return "main"

    def branches(self, repo: Path) -> List[str]:
        try:
            out = self._run(repo, "branch")
        except (OSError, subprocess.SubprocessError):
            logger.exception("repos.branches_failed repo=%s", repo)
            return ["main"]
        names = []
        for line in out.splitlines():
            line = line.strip()
            if line:
                names.append(line.lstrip("*").strip())
        return names

    def description(self, repo: Path) -> str:
        readme = repo / "README.md"
        if readme.exists():
            first = readme.read_text(encoding="utf-8", errors="replace").split("\n", 1)[0]
            return first.lstrip("#").strip()
        return "No description available"

    def license(self, repo: Path) -> str:
        for name in LICENSE_FILES:
            path = repo / name
            if path.exists():
                content = path.read_text(encoding="utf-8", errors="replace")
                if "MIT" in content:
                    return "MIT"
                if "Apache License" in content:
                    return "Apache-2.0"
                if "GNU GENERAL PUBLIC" in content:
                    return "GPL-3.0"
                return "Other"
        return "None"

    def _commit_date(self, repo: Path, *args: str) -> str:
        try:
            out = self._run(repo, "log", "--format=%ct", *args).split()
            return _iso(out[0]) if out else _now_iso()
        except (OSError, subprocess.SubprocessError, ValueError):
            logger.exception("repos.commit_date_failed repo=%s", repo)
            return _now_iso()

    def last_commit_date(self, repo: Path) -> str:
        return self._commit_date(repo, "-1")

    def creation_date(self, repo: Path) -> str:
        return self._commit_date(repo, "--reverse")

    def summary(self, owner: str, name: str, repo: Path) -> Dict[str, Any]:
        return {
            "id": f"{owner}/{name}",
            "name": name,
            "owner": owner,
            "description": self.description(repo),
            "updated_at": self.last_commit_date(repo),
            "default_branch": self.default_branch(repo),
            "license": self.license(repo),
        }

    def list_repos(self) -> List[Dict[str, Any]]:
        repos: List[Dict[str, Any]] = []
        if not self.root.is_dir():
            return repos
        for owner_dir in sorted(p for p in self.root.iterdir() if p.is_dir()):
            for repo_dir in sorted(p for p in owner_dir.iterdir() if p.is_dir()):
                if not (repo_dir / ".mgit").is_dir():
                    continue
                repos.append(self.summary(owner_dir.name, repo_dir.name, repo_dir))
        return repos

    def repo_info(self, owner: str, name: str) -> Dict[str, Any]:
        repo = self.repo_path(owner, name)
        info = self.summary(owner, name, repo)
        info["full_name"] = f"{owner}/{name}"
        info["created_at"] = self.creation_date(repo)
        return info

    # -------------------------------------------------------------------------
    # tree / files
    # -------------------------------------------------------------------------
    def last_commit_for_path(self, repo: Path, file_path: str) -> Dict[str, Any]:
        try:
            out = self._run(repo, "log", "-1", f"--format=%h{SEP}%an{SEP}%at{SEP}%s", "--", file_path)
            h, author, ts, message = out.strip().split(SEP, 3)
            return {"hash": h, "message": message, "author": author, "date": _iso(ts)}
        except (OSError, subprocess.SubprocessError, ValueError):
            logger.debug("repos.last_commit_unknown repo=%s path=%s", repo, file_path)
            return {"hash": "", "message": "Unknown", "author": "Unknown", "date": _now_iso()}

    def contents(self, repo: Path, file_path: str) -> Any:
        file_path = validate_path(file_path)
        full = repo / file_path
        if not full.exists():
            raise InvalidPath(f"path not found: {file_path}")

        if not full.is_dir():
            return {
                "name": full.name,
                "path": file_path,
                "type": "file",
                "size": full.stat().st_size,
                "sha": "",
                "lastCommit": self.last_commit_for_path(repo, file_path),
            }

        entries = []
        for entry in sorted(full.iterdir(), key=lambda p: p.name):
            if entry.name == ".mgit":
                continue
            entry_path = str(PurePosixPath(file_path) / entry.name) if file_path else entry.name
            item: Dict[str, Any] = {
                "name": entry.name,
                "path": entry_path,
                "type": "dir" if entry.is_dir() else "file",
            }
            if not entry.is_dir():
                item["size"] = entry.stat().st_size
                item["sha"] = ""
            item["lastCommit"] = self.last_commit_for_path(repo, entry_path)
            entries.append(item)
        return entries

    def file_content(self, repo: Path, file_path: str, ref: str) -> Dict[str, Any]:
        file_path = validate_path(file_path, allow_empty=False)
        try:
            data: bytes = self._run(repo, "show", f"{ref}:{file_path}", text=False)
        except subprocess.CalledProcessError as e:
            raise InvalidPath(f"path not found at {ref}: {file_path}") from e

        name = PurePosixPath(file_path).name
        is_binary = PurePosixPath(file_path).suffix.lower() in BINARY_EXTENSIONS
        return {
            "content": base64.b64encode(data).decode("ascii") if is_binary else data.decode("utf-8", errors="replace"),
            "encoding": "base64" if is_binary else "utf-8",
            "size": len(data),
            "name": name,
            "path": file_path,
            "sha": "",
            "isBinary": is_binary,
            "type": "file",
        }

    # -------------------------------------------------------------------------
    # history
    # -------------------------------------------------------------------------
    def commit_history(self, repo: Path, ref: str, file_path: str = "") -> List[Dict[str, Any]]:
        file_path = validate_path(file_path)
        args = ["log", f"--format=%h{SEP}%an{SEP}%ae{SEP}%at{SEP}%s"]
        if ref:
            args.append(ref)
        if file_path:
            args += ["--", file_path]
        try:
            out = self._run(repo, *args)
        except (OSError, subprocess.SubprocessError):
            logger.exception("repos.history_failed repo=%s ref=%s", repo, ref)
            return []

        commits = []
        for line in out.splitlines():
            if not line.strip():
                continue
            h, author, email, ts, message = line.split(SEP, 4)
            commits.append(
                {
                    "hash": h,
                    "mgitHash": self._mapping_for(repo, h).get("MGitHash"),
                    "author": {"name": author, "email": email},
                    "date": _iso(ts),
                    "message": message,
                }
            )
        return commits

    def commit_detail(self, repo: Path, sha: str) -> Dict[str, Any]:
        if not sha or not all(c in "0123456789abcdefABCDEF" for c in sha):
            raise CommitNotFound(sha)
        fmt = SEP.join(["%H", "%an", "%ae", "%at", "%cn", "%ce", "%ct", "%P", "%s"])
        try:
            out = self._run(repo, "show", "--no-color", f"--format={fmt}", sha)
        except (OSError, subprocess.SubprocessError) as e:
            raise CommitNotFound(sha) from e

        header, _, rest = out.partition("\n")
        fields = header.split(SEP, 8)
        if len(fields) != 9:
            raise CommitNotFound(sha)
        h, a_name, a_email, a_ts, c_name, c_email, c_ts, parents, subject = fields

        diff_start = rest.find("diff --git")
        mapping = self._mapping_for(repo, h)
        return {
            "hash": h,
            "mgitHash": mapping.get("MGitHash"),
            "author": {
                "name": a_name,
                "email": a_email,
                "date": _iso(a_ts),
                "nostrPubkey": mapping.get("Pubkey"),
            },
            "committer": {"name": c_name, "email": c_email, "date": _iso(c_ts)},
            "message": subject.strip(),
            "parents": [p for p in parents.split(" ") if p],
            "diff": rest[diff_start:] if diff_start >= 0 else "",
        }

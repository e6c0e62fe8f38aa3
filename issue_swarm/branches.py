"""
Branch naming for the issue task tree.

Names are part of the external contract: later events re-associate with
in-flight state using nothing but a branch name or an issue number.

    work:    <prefix>/issue-<N>-<slug>
    setup:   <prefix>/issue-<N>-setup
    EM:      <prefix>/issue-<N>-em-<emId>
    worker:  <emBranch>-w-<workerId>
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

MAX_SLUG_LENGTH = 50
SETUP_EM_ID = 0

# Slugs that would make a work branch parse as a tree branch
_RESERVED_SLUG = re.compile(r"^(setup|em-\d+)(-w-\d+)?$")


class BranchKind(Enum):
    WORK = "work"
    SETUP = "setup"
    EM = "em"
    WORKER = "worker"


@dataclass(frozen=True)
class BranchInfo:
    kind: BranchKind
    issue_number: int
    em_id: Optional[int] = None
    worker_id: Optional[int] = None


def slugify(title: str) -> str:
    """
    Turn an issue title into a branch-safe slug.

    Lowercase alphanumerics joined by single hyphens, at most
    MAX_SLUG_LENGTH characters. Empty results become "work" and slugs that
    collide with tree suffixes get a "-work" suffix.
    """
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    slug = slug[:MAX_SLUG_LENGTH].rstrip("-")
    if not slug:
        return "work"
    if _RESERVED_SLUG.match(slug):
        return f"{slug}-work"
    return slug


def work_branch_name(prefix: str, issue_number: int, title: str) -> str:
    return f"{prefix}/issue-{issue_number}-{slugify(title)}"


def em_branch_name(prefix: str, issue_number: int, em_id: int) -> str:
    if em_id == SETUP_EM_ID:
        return f"{prefix}/issue-{issue_number}-setup"
    return f"{prefix}/issue-{issue_number}-em-{em_id}"


def worker_branch_name(em_branch: str, worker_id: int) -> str:
    return f"{em_branch}-w-{worker_id}"


def work_branch_glob(prefix: str, issue_number: Optional[int] = None) -> str:
    """Remote ref pattern covering every branch of one issue (or all issues)."""
    issue = str(issue_number) if issue_number is not None else "*"
    return f"{prefix}/issue-{issue}-*"


def parse_branch(prefix: str, branch: str) -> Optional[BranchInfo]:
    """
    Parse a tree branch name.

    Returns:
        BranchInfo, or None if the branch is not under this prefix.
    """
    match = re.match(rf"^{re.escape(prefix)}/issue-(\d+)-(.+)$", branch)
    if not match:
        return None
    issue_number = int(match.group(1))
    rest = match.group(2)

    worker = re.match(r"^(setup|em-(\d+))-w-(\d+)$", rest)
    if worker:
        em_id = SETUP_EM_ID if worker.group(1) == "setup" else int(worker.group(2))
        return BranchInfo(BranchKind.WORKER, issue_number, em_id, int(worker.group(3)))
    if rest == "setup":
        return BranchInfo(BranchKind.SETUP, issue_number, SETUP_EM_ID)
    em = re.match(r"^em-(\d+)$", rest)
    if em:
        return BranchInfo(BranchKind.EM, issue_number, int(em.group(1)))
    return BranchInfo(BranchKind.WORK, issue_number)


def is_work_branch(prefix: str, branch: str, issue_number: Optional[int] = None) -> bool:
    info = parse_branch(prefix, branch)
    if info is None or info.kind != BranchKind.WORK:
        return False
    return issue_number is None or info.issue_number == issue_number


def issue_number_from_branch(prefix: str, branch: str) -> Optional[int]:
    info = parse_branch(prefix, branch)
    return info.issue_number if info else None

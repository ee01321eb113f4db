"""Prompt construction and review-output parsing for executors."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from taskweave.models import ChangeRequest, ReviewerClass, Task

logger = logging.getLogger(__name__)

MAX_DIFF_CHARS = 10000

TASK_INSTRUCTIONS = (
    "Please implement the task described above. Make sure to:\n"
    "1. Write clean, maintainable code\n"
    "2. Follow the project's coding standards\n"
    "3. Add appropriate tests if needed\n"
    "4. Update documentation if required\n"
    "5. Leave all changes in the working directory; they are committed for you\n"
)

REVIEW_GUIDELINES: Dict[ReviewerClass, str] = {
    ReviewerClass.SECURITY: (
        "As a **Security Reviewer**, focus on:\n"
        "- SQL injection vulnerabilities\n"
        "- XSS (Cross-Site Scripting) risks\n"
        "- Hardcoded secrets or credentials\n"
        "- Authentication and authorization issues\n"
        "- Input validation and sanitization\n"
        "- Dependency vulnerabilities"
    ),
    ReviewerClass.ARCHITECTURE: (
        "As an **Architecture Reviewer**, focus on:\n"
        "- Modularity and separation of concerns\n"
        "- Design patterns usage\n"
        "- Scalability and extensibility\n"
        "- Technical debt introduction\n"
        "- Maintainability and testability"
    ),
    ReviewerClass.PERFORMANCE: (
        "As a **Performance Reviewer**, focus on:\n"
        "- N+1 query problems\n"
        "- Missing database indexes\n"
        "- Caching opportunities\n"
        "- Algorithm complexity (time/space)\n"
        "- Memory leaks and unnecessary computations"
    ),
    ReviewerClass.GENERALIST: (
        "As a **General Code Reviewer**, focus on:\n"
        "- Code quality and readability\n"
        "- Proper error handling\n"
        "- Test coverage\n"
        "- Edge cases handling\n"
        "- Potential bugs"
    ),
}


# ── Task prompt ──────────────────────────────────────────────────────


def build_task_prompt(task: Task, review_comments: Optional[List[str]] = None) -> str:
    sections = [f"# Task: {task.title}\n"]
    if task.description:
        sections.append(f"## Description\n{task.description}\n")
    if task.acceptance_criteria:
        criteria = "\n".join(f"- {c}" for c in task.acceptance_criteria)
        sections.append(f"## Acceptance Criteria\n{criteria}\n")
    if task.affected_files:
        sections.append("## Affected Files\n" + "\n".join(task.affected_files) + "\n")
    if review_comments:
        feedback = "\n".join(f"- {c}" for c in review_comments)
        sections.append(f"## Review Feedback To Address\n{feedback}\n")
    sections.append(f"## Instructions\n{TASK_INSTRUCTIONS}")
    return "\n".join(sections)


def build_change_request_body(task: Task) -> str:
    sections = [f"## Task: {task.title}\n"]
    if task.description:
        sections.append(f"### Description\n{task.description}\n")
    if task.acceptance_criteria:
        sections.append("### Acceptance Criteria\n" + "\n".join(f"- {c}" for c in task.acceptance_criteria) + "\n")
    sections.append(f"### Task ID\n{task.id}\n")
    return "\n".join(sections)


# ── Conflict prompt ──────────────────────────────────────────────────


def build_conflict_prompt(task: Task, mainline: str, conflicts: Dict[str, str]) -> str:
    """Ask the author to resolve rebase conflicts in place.

    Args:
        conflicts: file path → current file content (with markers)
    """
    sections = [
        "# Resolve Merge Conflicts\n",
        f"Your branch for **{task.title}** is being rebased onto `{mainline}` "
        "and the files below conflict.\n",
    ]
    if task.description:
        sections.append(f"## Task Context\n{task.description}\n")
    for path, content in conflicts.items():
        sections.append(f"## {path}\n```\n{content}\n```\n")
    sections.append(
        "## Instructions\n"
        "Edit each file so that it keeps the intent of both sides. "
        "Remove every conflict marker (<<<<<<<, =======, >>>>>>>). "
        "Do not commit; the rebase is continued for you.\n"
    )
    return "\n".join(sections)


# ── Review prompt ────────────────────────────────────────────────────


def build_review_prompt(reviewer_name: str, task: Task, cr: ChangeRequest, diff: str) -> str:
    if len(diff) > MAX_DIFF_CHARS:
        diff = diff[:MAX_DIFF_CHARS] + "\n... (truncated)"
    sections = [
        "# Code Review Task\n",
        f"You are **{reviewer_name}**, a {cr.reviewer_class.value} code reviewer.\n",
        "## Review Guidelines\n" + REVIEW_GUIDELINES[cr.reviewer_class] + "\n",
        f"## Task\n{task.title}\n\n{task.description}\n",
        f"## Change Request\n- **Branch**: {cr.branch}\n- **Handle**: {cr.handle}\n",
        f"## Code Changes\n```diff\n{diff}\n```\n",
        "## Instructions\n"
        "Review the changes above and answer with JSON only:\n"
        '```json\n{"approved": true, "comments": ["..."]}\n```\n',
    ]
    return "\n".join(sections)


@dataclass
class ReviewVerdict:
    approved: bool
    comments: List[str] = field(default_factory=list)
    parsed: bool = True


_JSON_OBJECT = re.compile(r"\{.*\"approved\".*\}", re.DOTALL)


def parse_review_output(output: str) -> ReviewVerdict:
    """Extract the reviewer's JSON verdict; anything unparseable requests changes."""
    match = _JSON_OBJECT.search(output or "")
    try:
        if not match:
            raise ValueError("no JSON object with 'approved' in review output")
        data = json.loads(match.group(0))
        approved = data.get("approved")
        if not isinstance(approved, bool):
            raise ValueError("'approved' must be a boolean")
        comments = data.get("comments", [])
        if isinstance(comments, str):
            comments = [comments] if comments else []
        elif not isinstance(comments, list):
            raise ValueError("'comments' must be a string or a list")
        return ReviewVerdict(approved=approved, comments=[str(c) for c in comments])
    except ValueError as e:
        logger.warning("Could not parse review output: %s", e)
        return ReviewVerdict(
            approved=False,
            comments=[f"Review parsing failed. Raw output:\n{output}"],
            parsed=False,
        )

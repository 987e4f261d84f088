"""Extract dependency references from a pull request description.

A pull request declares what it depends on with a heading followed by a
Markdown task list::

    Depends on:
    - [ ] rock-core/tools-syskit#123
    - [ ] https://github.com/rock-core/base-types/pull/42
    - [x] #7            <- done, ignored

Only open tasks count, and the list stops at the first line that is not a
list item. Turning a reference into ``(repo_url, number)`` is dialect
specific and lives in each service adapter.
"""

from __future__ import annotations

import re

DEPENDS_ON_RE = re.compile(r"(?:.*depends?(?:\s+on)?\s*:?\s*\n)(.*)", re.IGNORECASE | re.DOTALL)
OPEN_TASK_RE = re.compile(r"(?:-\s*\[\s*\]\s*)([A-Za-z\d+_\-:/#!.]+)")


def parse_task_list(body: str | None) -> list[str]:
    """Return the references listed as open tasks under "Depends on"."""
    if not body:
        return []
    m = DEPENDS_ON_RE.match(body.replace("\r\n", "\n"))
    if not m:
        return []

    lines = [line.strip() for line in m.group(1).splitlines()]
    lines = [line for line in lines if line]

    items: list[str] = []
    for line in lines:
        if not line.startswith("-"):
            break
        items.append(line)

    return OPEN_TASK_RE.findall("\n".join(items))

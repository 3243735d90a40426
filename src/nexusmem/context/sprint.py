"""Read-only view over a project's active sprint documents."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence

from nexusmem.errors import FileReadError
from nexusmem.models import SprintState
from nexusmem.utils.files import read_text_file
from nexusmem.utils.text import extract_unchecked_items

LOGGER = logging.getLogger(__name__)

DEFAULT_SPRINT_DIR = "00-MANAGEMENT/sprints"
DEFAULT_STATE_PATH = "00-MANAGEMENT/.nexus_state/session.json"
TASKS_FILENAME = "Tasks.md"
CONTEXT_FILENAME = "Sprint-Context.md"
NO_UNFINISHED_TASKS = "No unfinished tasks"


@dataclass(slots=True)
class SprintLocation:
    sprint_id: str
    tasks_path: Path
    context_path: Path


class SprintSource(Protocol):
    def locate(self, project_id: str, roots: Sequence[Path]) -> Optional[SprintLocation]:
        """Return where the active sprint's documents live, or None."""
        ...


class VaultSprintSource:
    """Finds the active sprint inside a project's vault folder.

    The sprint id comes from ``active_sprint`` when given, otherwise from the
    session state file under the first root that has one::

        {"active_sprint": {"current": "sprint-3", "status": "in_progress"}}
    """

    def __init__(
        self,
        *,
        active_sprint: Optional[str] = None,
        sprint_dir: str = DEFAULT_SPRINT_DIR,
        state_path: str = DEFAULT_STATE_PATH,
    ) -> None:
        self.active_sprint = active_sprint
        self.sprint_dir = sprint_dir
        self.state_path = state_path

    def _read_active_sprint(self, root: Path) -> Optional[str]:
        state_file = root / self.state_path
        if not state_file.is_file():
            return None
        try:
            state = json.loads(read_text_file(state_file))
        except (FileReadError, json.JSONDecodeError) as e:
            LOGGER.warning(f"Failed to read sprint state {state_file}: {e}")
            return None
        active = state.get("active_sprint") if isinstance(state, dict) else None
        if isinstance(active, dict):
            current = active.get("current")
            return str(current) if current else None
        return None

    def locate(self, project_id: str, roots: Sequence[Path]) -> Optional[SprintLocation]:
        for root in roots:
            root = Path(root)
            sprint_id = self.active_sprint or self._read_active_sprint(root)
            if not sprint_id:
                continue
            sprint_dir = root / self.sprint_dir / sprint_id
            if self.active_sprint and not sprint_dir.is_dir():
                continue
            return SprintLocation(
                sprint_id=sprint_id,
                tasks_path=sprint_dir / TASKS_FILENAME,
                context_path=sprint_dir / CONTEXT_FILENAME,
            )
        LOGGER.debug("No active sprint for project %s", project_id)
        return None


def extract_unfinished_tasks(content: str) -> str:
    """Unchecked ``- [ ]`` / ``* [ ]`` lines, or a placeholder when there are none."""
    unfinished = extract_unchecked_items(content.splitlines())
    return "\n".join(unfinished) if unfinished else NO_UNFINISHED_TASKS


def read_sprint_state(location: SprintLocation) -> SprintState:
    """Load both sprint documents. Raises FileReadError if either is unreadable."""
    tasks = read_text_file(location.tasks_path)
    narrative = read_text_file(location.context_path)
    return SprintState(
        sprint_id=location.sprint_id,
        unfinished_tasks=extract_unfinished_tasks(tasks),
        narrative=narrative,
    )

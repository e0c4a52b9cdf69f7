"""
Persistence of session state between invocations, so that ``down``, ``stop``,
``start`` and ``ps`` see what an earlier ``up`` started.
"""
import logging
import os
from typing import Optional

from pydantic import ValidationError

from ..MODELS.session_state import SessionState

LOG = logging.getLogger(__name__)


class SessionStore:
    """
    Stores one JSON document per project under ``<base_dir>/<state_dir>/sessions``.
    """
    def __init__(self, base_dir: str = ".", state_dir: str = ".convoy"):
        """
        Initializes the session store.

        :param base_dir: Project directory, usually the manifest's directory.
        :param state_dir: State directory relative to base_dir.
        """
        self.root = os.path.join(os.path.abspath(base_dir), state_dir, "sessions")

    def path(self, project: str) -> str:
        return os.path.join(self.root, f"{project}.json")

    def load(self, project: str) -> Optional[SessionState]:
        """
        Loads the recorded session of a project.

        :return: The session, or None if nothing usable was recorded.
        """
        path = self.path(project)
        if not os.path.exists(path):
            return None
        try:
            with open(path, 'r') as f:
                return SessionState.model_validate_json(f.read())
        except (OSError, ValidationError) as e:
            LOG.warning("Ignoring unreadable session file %s: %s", path, e)
            return None

    def load_or_new(self, project: str) -> SessionState:
        return self.load(project) or SessionState(project=project)

    def save(self, session: SessionState) -> None:
        """
        Writes a session atomically, replacing any earlier record.
        """
        os.makedirs(self.root, exist_ok=True)
        path = self.path(session.project)
        tmp_path = f"{path}.tmp"
        with open(tmp_path, 'w') as f:
            f.write(session.model_dump_json(indent=2))
        os.replace(tmp_path, path)

    def delete(self, project: str) -> None:
        try:
            os.remove(self.path(project))
        except FileNotFoundError:
            pass

"""State persistence for managed resources."""
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from tillstand.core.logger import get_logger

logger = get_logger(__name__)

RESOURCE_KINDS = ("vm", "instance", "app")
DEFAULT_STATE_FILE = Path(".tillstand") / "state.json"


class StateStore:
    """Last applied spec of every resource Tillstand manages.

    The stored spec carries what the config file cannot: server-assigned
    ids and device identities, and the caller-only fields that a refresh
    carries forward.
    """

    def __init__(self, state_file: Optional[Path] = None):
        """Initialize state store.

        Args:
            state_file: Path to state file. Defaults to .tillstand/state.json
        """
        if state_file is None:
            state_file = Path.cwd() / DEFAULT_STATE_FILE

        self.state_file = Path(state_file)
        self.enabled = not os.environ.get('TILLSTAND_STATELESS')
        self.state = self._load()

    def _load(self) -> dict:
        if not self.state_file.exists():
            return self._empty_state()

        try:
            with open(self.state_file, 'r') as f:
                state = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Failed to load state file: {e}, using empty state")
            return self._empty_state()

        resources = state.setdefault("resources", {})
        for kind in RESOURCE_KINDS:
            resources.setdefault(kind, {})
        logger.debug(f"Loaded state from {self.state_file}")
        return state

    def _empty_state(self) -> dict:
        now = datetime.now().isoformat()
        return {
            "version": "1.0",
            "created_at": now,
            "updated_at": now,
            "resources": {kind: {} for kind in RESOURCE_KINDS},
        }

    def save(self) -> bool:
        """Save state to file.

        Returns:
            True if saved successfully
        """
        if not self.enabled:
            logger.debug("State tracking disabled (TILLSTAND_STATELESS)")
            return False

        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self.state["updated_at"] = datetime.now().isoformat()

            # Write atomically (write to temp, then rename)
            temp_file = self.state_file.with_suffix('.tmp')
            with open(temp_file, 'w') as f:
                json.dump(self.state, f, indent=2)

            temp_file.replace(self.state_file)
            logger.debug(f"Saved state to {self.state_file}")
            return True

        except (IOError, OSError) as e:
            logger.error(f"Failed to save state: {e}")
            return False

    def get_resource(self, kind: str, name: str) -> Optional[Dict[str, Any]]:
        """Stored spec dict for ``kind``/``name``, or None if untracked."""
        entry = self.state["resources"].get(kind, {}).get(name)
        if entry is None:
            return None
        return entry.get("spec")

    def record_resource(self, kind: str, name: str, spec: Dict[str, Any]) -> None:
        """Store the spec produced by the last successful apply or refresh."""
        resources = self.state["resources"].setdefault(kind, {})
        previous = resources.get(name, {})
        now = datetime.now().isoformat()
        resources[name] = {
            "spec": spec,
            "created_at": previous.get("created_at", now),
            "updated_at": now,
        }
        self.save()

    def remove_resource(self, kind: str, name: str) -> bool:
        removed = self.state["resources"].get(kind, {}).pop(name, None) is not None
        if removed:
            self.save()
        return removed

    def list_resources(self, kind: Optional[str] = None) -> List[tuple]:
        """(kind, name) pairs of tracked resources."""
        kinds = [kind] if kind else list(RESOURCE_KINDS)
        return [
            (k, name)
            for k in kinds
            for name in sorted(self.state["resources"].get(k, {}))
        ]

    def get_stats(self) -> Dict[str, int]:
        """Number of tracked resources per kind."""
        return {kind: len(self.state["resources"].get(kind, {})) for kind in RESOURCE_KINDS}

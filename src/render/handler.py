from __future__ import annotations

import logging
import os
import sys
from typing import Any, Dict

from common.errors import ModelError
from store.yaml_store import UserStateStore


ENV_LOG_LEVEL = "SALTUI_LOG_LEVEL"

logger = logging.getLogger(__name__)


def run_once() -> Dict[str, Any]:
    """Regenerate the state file from the pillar file configured in the environment.

    The pillar is only read, so no encryption key is needed and stored
    passwords are left as they are.
    """
    store = UserStateStore.from_env(require_key=False)
    users = store.load()
    store.write_state(users)

    present = sum(1 for u in users if u.present)
    return {
        "ok": True,
        "users": len(users),
        "present": present,
        "absent": len(users) - present,
        "state_path": str(store.state_path),
    }


def main() -> int:
    level = os.environ.get(ENV_LOG_LEVEL) or "INFO"
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        result = run_once()
    except (ModelError, RuntimeError) as ex:
        logger.error("Failed to render state: %s", ex)
        return 1
    logger.info(
        "Rendered %d users (%d present, %d absent) to %s",
        result["users"],
        result["present"],
        result["absent"],
        result["state_path"],
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())

import os, json, logging
from datetime import datetime, timezone

from engine.memory import AdaptiveMemory
from engine.settings import MemorySettings

_log = logging.getLogger(__name__)


def save_memory(path, memory: AdaptiveMemory):
    """Write the memory snapshot to *path* (atomic replace)."""
    folder = os.path.dirname(os.path.abspath(path))
    os.makedirs(folder, exist_ok=True)

    payload = memory.snapshot()
    payload["saved_at"] = datetime.now(timezone.utc).isoformat()

    tmp = f"{path}.tmp"
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    os.replace(tmp, path)

    _log.info("Adaptive memory saved to %s (%d domain(s))", path, len(payload["domains"]))
    return path


def load_memory(path, settings: MemorySettings | None = None) -> AdaptiveMemory:
    """Load a memory snapshot, or return an empty memory when none exists.

    A corrupt file is logged and ignored so a restart never blocks a batch.
    """
    if not path or not os.path.isfile(path):
        return AdaptiveMemory(settings)
    try:
        with open(path, encoding="utf-8") as f:
            memory = AdaptiveMemory.from_snapshot(json.load(f), settings)
    except (ValueError, OSError) as exc:
        # JSONDecodeError is a ValueError
        _log.warning("Ignoring unreadable memory file %s: %s", path, exc)
        return AdaptiveMemory(settings)

    _log.info("Adaptive memory loaded from %s (%d domain(s))", path, len(memory.domains()))
    return memory

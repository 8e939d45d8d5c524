"""Bridge discovery.

`remotechat serve` records where it listens in runtime.json under the
data directory (see config.get_data_dir) and removes the file on exit.
Chat adapters and `remotechat status` read it instead of needing the
port configured twice.
"""

import json
import logging
import os
from dataclasses import dataclass, asdict, fields
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from .config import get_data_dir

logger = logging.getLogger(__name__)

FALLBACK_VERSION = "0.3.0"
RUNTIME_FILE = "runtime.json"


@lru_cache(maxsize=1)
def get_version() -> str:
    """Installed distribution version (FALLBACK_VERSION from a source checkout)."""
    from importlib.metadata import PackageNotFoundError, version
    try:
        return version("remotechat")
    except PackageNotFoundError:
        return FALLBACK_VERSION


def runtime_file() -> Path:
    return get_data_dir() / RUNTIME_FILE


@dataclass
class BridgeRuntime:
    host: str
    port: int
    pid: int
    started_at: str
    version: str

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BridgeRuntime":
        return cls(**{f.name: data[f.name] for f in fields(cls)})

    def is_alive(self) -> bool:
        try:
            os.kill(self.pid, 0)
        except OSError:
            return False
        return True


def record_bridge(host: str, port: int) -> BridgeRuntime:
    """Write runtime.json for a bridge starting in this process."""
    runtime = BridgeRuntime(
        host=host,
        port=port,
        pid=os.getpid(),
        started_at=datetime.now(timezone.utc).isoformat(),
        version=get_version(),
    )
    runtime_file().write_text(json.dumps(asdict(runtime), indent=2))
    return runtime


def read_bridge() -> Optional[BridgeRuntime]:
    """The recorded bridge, or None when there is no usable record."""
    path = runtime_file()
    try:
        return BridgeRuntime.from_dict(json.loads(path.read_text()))
    except FileNotFoundError:
        return None
    except (ValueError, KeyError, TypeError) as e:
        logger.warning(f"Ignoring unreadable {path}: {e}")
        return None


def forget_bridge() -> None:
    runtime_file().unlink(missing_ok=True)


def get_status() -> dict:
    """Status for `remotechat status`; a record left by a dead process is removed."""
    runtime = read_bridge()
    if runtime is None:
        return {"running": False}
    if not runtime.is_alive():
        forget_bridge()
        return {"running": False}
    status = asdict(runtime)
    status.update(running=True, url=runtime.url)
    return status

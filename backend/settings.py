import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger("stage_portrait.settings")

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# Field -> node/slot mapping for workflow_api.json. Overridable with a JSON
# file (PORTRAIT_BINDINGS_PATH) so the workflow can change without code edits.
DEFAULT_BINDINGS: Dict[str, Any] = {
    "subject": {"node": "11", "input": "image"},
    "frame": {"node": "38", "input": "image"},
    "text": [
        {"node": "29", "input": "text_1", "template": "{gender} {position} of a {band_genre} band"},
        {"node": "29", "input": "text_2", "template": "performing a concert with {expression} expression"},
        {"node": "29", "input": "text_3", "template": "at a {stage}"},
        {"node": "29", "input": "text_6", "template": "{position} in foreground"},
    ],
    "output_node": "20",
}


@dataclass(frozen=True)
class Settings:
    backend_url: str = "http://localhost:8188"
    workflow_path: str = os.path.join(BASE_DIR, "workflow_api.json")
    bindings_path: Optional[str] = None
    frames_dir: str = os.path.join(BASE_DIR, "static", "frames")
    upload_dir: str = os.path.join(BASE_DIR, "uploads")
    default_frame: str = "sample_frame.png"
    upload_max_retries: int = 3
    upload_retry_delay: float = 2.0
    upload_timeout: float = 60.0
    upload_overwrite: bool = False
    request_timeout: float = 30.0
    poll_interval: float = 1.0
    poll_timeout: Optional[float] = 600.0
    poll_max_ticks: Optional[int] = None
    log_level: str = "INFO"
    bindings: Dict[str, Any] = field(default_factory=lambda: dict(DEFAULT_BINDINGS))


def _env_int(env: Mapping[str, str], name: str, default: Optional[int]) -> Optional[int]:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return max(0, int(raw))
    except Exception:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _env_float(env: Mapping[str, str], name: str, default: Optional[float]) -> Optional[float]:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return max(0.0, float(raw))
    except Exception:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def load_bindings(path: Optional[str]) -> Dict[str, Any]:
    """Return the default bindings, overlaid with the JSON file at ``path``."""
    bindings = dict(DEFAULT_BINDINGS)
    if not path:
        return bindings
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ValueError(f"Bindings file {path} must contain a JSON object")
    bindings.update(data)
    return bindings


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    env = os.environ if env is None else env
    defaults = Settings()

    poll_timeout = _env_float(env, "POLL_TIMEOUT", defaults.poll_timeout)
    bindings_path = env.get("PORTRAIT_BINDINGS_PATH") or None

    return Settings(
        backend_url=env.get("COMFY_BASE_URL", defaults.backend_url).rstrip("/"),
        workflow_path=env.get("PORTRAIT_WORKFLOW_PATH", defaults.workflow_path),
        bindings_path=bindings_path,
        frames_dir=env.get("PORTRAIT_FRAMES_DIR", defaults.frames_dir),
        upload_dir=env.get("PORTRAIT_UPLOAD_DIR", defaults.upload_dir),
        default_frame=env.get("DEFAULT_FRAME", defaults.default_frame),
        upload_max_retries=max(1, _env_int(env, "UPLOAD_MAX_RETRIES", defaults.upload_max_retries)),
        upload_retry_delay=_env_float(env, "UPLOAD_RETRY_DELAY", defaults.upload_retry_delay),
        upload_timeout=_env_float(env, "UPLOAD_TIMEOUT", defaults.upload_timeout),
        upload_overwrite=_env_bool(env, "UPLOAD_OVERWRITE", defaults.upload_overwrite),
        request_timeout=_env_float(env, "REQUEST_TIMEOUT", defaults.request_timeout),
        poll_interval=_env_float(env, "POLL_INTERVAL", defaults.poll_interval),
        # 0 disables the wall-clock deadline / the tick cap
        poll_timeout=poll_timeout or None,
        poll_max_ticks=_env_int(env, "POLL_MAX_TICKS", defaults.poll_max_ticks) or None,
        log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
        bindings=load_bindings(bindings_path),
    )

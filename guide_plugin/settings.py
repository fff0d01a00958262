"""Runtime settings for Screen Guide, read from JSON with environment overrides."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional, Tuple

from guide_plugin.coordinate_transform import TransformLimits

_LOGGER = logging.getLogger("ScreenGuide.Plugin.Settings")

SETTINGS_FILENAME = "screen_guide.json"
ROOT_DIR = Path(__file__).resolve().parent.parent
DEFAULT_PORT_FILE = ROOT_DIR / "port.json"
DEFAULT_API_URL = "https://api.anthropic.com/v1/messages"
DEFAULT_MODEL = "claude-3-5-sonnet-20241022"
DEFAULT_BACKOFF: Tuple[float, ...] = (2.0, 5.0, 10.0)
DEFAULT_IMAGE_CEILING = 5 * 1024 * 1024

_ENV_PREFIX = "SCREEN_GUIDE_"


@dataclass(frozen=True)
class GuideSettings:
    api_key: str = ""
    api_url: str = DEFAULT_API_URL
    model: str = DEFAULT_MODEL
    request_timeout: float = 30.0
    max_attempts: int = 3
    backoff_schedule: Tuple[float, ...] = DEFAULT_BACKOFF
    image_ceiling_bytes: int = DEFAULT_IMAGE_CEILING
    overlay_duration: float = 5.0
    settle_delay: float = 2.0
    connect_timeout: float = 2.0
    call_timeout: float = 3.0
    low_confidence_threshold: float = 0.8
    calibrate: bool = True
    port_file: Path = DEFAULT_PORT_FILE
    log_retention: int = 5
    limits: TransformLimits = field(default_factory=TransformLimits)


def _coerce_float(raw: Any, fallback: float, *, minimum: float) -> float:
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return fallback
    if value != value:
        return fallback
    return max(minimum, value)


def _coerce_int(raw: Any, fallback: int, *, minimum: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return fallback
    return max(minimum, value)


def _coerce_bool(raw: Any, fallback: bool) -> bool:
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        token = raw.strip().lower()
        if token in {"1", "true", "yes", "on"}:
            return True
        if token in {"0", "false", "no", "off"}:
            return False
    return fallback


def _coerce_schedule(raw: Any, fallback: Tuple[float, ...]) -> Tuple[float, ...]:
    if isinstance(raw, str):
        raw = [part for part in raw.split(",") if part.strip()]
    if not isinstance(raw, (list, tuple)) or not raw:
        return fallback
    values = []
    for item in raw:
        try:
            values.append(max(0.0, float(item)))
        except (TypeError, ValueError):
            return fallback
    return tuple(values)


def _load_file(path: Optional[Path]) -> Mapping[str, Any]:
    if path is None:
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return {}
    except (OSError, json.JSONDecodeError) as exc:
        _LOGGER.warning("Failed to read settings from %s; using defaults (%s)", path, exc)
        return {}
    if not isinstance(data, dict):
        _LOGGER.warning("Settings at %s are not a JSON object; using defaults", path)
        return {}
    return data


def _env_overrides(env: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for key, value in env.items():
        if key.startswith(_ENV_PREFIX):
            overrides[key[len(_ENV_PREFIX):].lower()] = value
    api_key = env.get("ANTHROPIC_API_KEY") or env.get("CLAUDE_API_KEY")
    if api_key and "api_key" not in overrides:
        overrides["api_key"] = api_key
    return overrides


def load_settings(path: Optional[Path] = None, env: Optional[Mapping[str, str]] = None) -> GuideSettings:
    """Merge defaults, the JSON file at ``path`` and ``SCREEN_GUIDE_*`` env vars."""

    data: dict[str, Any] = dict(_load_file(path))
    data.update(_env_overrides(os.environ if env is None else env))
    defaults = GuideSettings()
    limits_raw = data.get("limits")
    limits_raw = limits_raw if isinstance(limits_raw, Mapping) else {}
    base_limits = defaults.limits
    limits = TransformLimits(
        min_width=_coerce_float(limits_raw.get("min_width"), base_limits.min_width, minimum=1.0),
        min_height=_coerce_float(limits_raw.get("min_height"), base_limits.min_height, minimum=1.0),
        max_width_ratio=min(1.0, _coerce_float(limits_raw.get("max_width_ratio"), base_limits.max_width_ratio, minimum=0.05)),
        max_height_ratio=min(1.0, _coerce_float(limits_raw.get("max_height_ratio"), base_limits.max_height_ratio, minimum=0.05)),
    )
    port_file = data.get("port_file")
    settings = GuideSettings(
        api_key=str(data.get("api_key") or defaults.api_key).strip(),
        api_url=str(data.get("api_url") or defaults.api_url),
        model=str(data.get("model") or defaults.model),
        request_timeout=_coerce_float(data.get("request_timeout"), defaults.request_timeout, minimum=1.0),
        max_attempts=_coerce_int(data.get("max_attempts"), defaults.max_attempts, minimum=1),
        backoff_schedule=_coerce_schedule(data.get("backoff_schedule"), defaults.backoff_schedule),
        image_ceiling_bytes=_coerce_int(data.get("image_ceiling_bytes"), defaults.image_ceiling_bytes, minimum=1024),
        overlay_duration=_coerce_float(data.get("overlay_duration"), defaults.overlay_duration, minimum=0.5),
        settle_delay=_coerce_float(data.get("settle_delay"), defaults.settle_delay, minimum=0.0),
        connect_timeout=_coerce_float(data.get("connect_timeout"), defaults.connect_timeout, minimum=0.1),
        call_timeout=_coerce_float(data.get("call_timeout"), defaults.call_timeout, minimum=0.1),
        low_confidence_threshold=min(
            1.0,
            _coerce_float(data.get("low_confidence_threshold"), defaults.low_confidence_threshold, minimum=0.0),
        ),
        calibrate=_coerce_bool(data.get("calibrate"), defaults.calibrate),
        port_file=Path(str(port_file)).expanduser() if port_file else defaults.port_file,
        log_retention=_coerce_int(data.get("log_retention"), defaults.log_retention, minimum=1),
        limits=limits,
    )
    if not settings.api_key:
        _LOGGER.warning("No API key configured; set ANTHROPIC_API_KEY or %sAPI_KEY", _ENV_PREFIX)
    return settings

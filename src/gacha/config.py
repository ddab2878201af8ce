"""Configuration loading and directory resolution for gacha."""

from __future__ import annotations

import shutil
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Optional

try:  # pragma: no cover - exercised on Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for Python 3.9/3.10
    import tomli as tomllib  # type: ignore[no-redef]

CONFIG_DIR_NAME = ".gacha_config"
CONFIG_FILE_NAME = "config.toml"
LOGS_DIR_NAME = "logs"
HISTORY_DB_NAME = "history.db"

DEFAULT_DELAY_SECONDS = 2
DEFAULT_UI_PLACEMENT = "floating"
ALLOWED_UI_PLACEMENTS = ("floating", "embedded")

DEFAULT_PROBE_TIMEOUT_MS = 5000
DEFAULT_VISIBLE_INTERVAL_MS = 30000
DEFAULT_HIDDEN_INTERVAL_MS = 60000
DEFAULT_SETTLE_DELAY_MS = 100
DEFAULT_MAX_RECONNECT_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_MS = 1000
DEFAULT_BACKOFF_CAP_MS = 10000
DEFAULT_COOLDOWN_MS = 60000
DEFAULT_REBUILD_FAILURE_THRESHOLD = 1

DEFAULT_LOGS_ENABLED = True
DEFAULT_LOGS_MAX_FILE_BYTES = 5 * 1024 * 1024
DEFAULT_LOGS_MAX_FILES = 3
DEFAULT_LOGS_REDACTION = "default"
ALLOWED_LOG_REDACTION = ("default", "none", "strict")


class ProjectConfigError(RuntimeError):
    """Raised when project configuration is missing or invalid."""


@dataclass(frozen=True)
class LinkSettings:
    probe_timeout_ms: int = DEFAULT_PROBE_TIMEOUT_MS
    visible_interval_ms: int = DEFAULT_VISIBLE_INTERVAL_MS
    hidden_interval_ms: int = DEFAULT_HIDDEN_INTERVAL_MS
    settle_delay_ms: int = DEFAULT_SETTLE_DELAY_MS
    max_reconnect_attempts: int = DEFAULT_MAX_RECONNECT_ATTEMPTS
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    backoff_cap_ms: int = DEFAULT_BACKOFF_CAP_MS
    cooldown_ms: int = DEFAULT_COOLDOWN_MS
    rebuild_failure_threshold: int = DEFAULT_REBUILD_FAILURE_THRESHOLD

    def as_dict(self) -> Dict[str, int]:
        return {
            "probe_timeout_ms": self.probe_timeout_ms,
            "visible_interval_ms": self.visible_interval_ms,
            "hidden_interval_ms": self.hidden_interval_ms,
            "settle_delay_ms": self.settle_delay_ms,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "backoff_base_ms": self.backoff_base_ms,
            "backoff_cap_ms": self.backoff_cap_ms,
            "cooldown_ms": self.cooldown_ms,
            "rebuild_failure_threshold": self.rebuild_failure_threshold,
        }


@dataclass
class ProjectConfig:
    delay_seconds: int = DEFAULT_DELAY_SECONDS
    ui_placement: str = DEFAULT_UI_PLACEMENT
    link: LinkSettings = field(default_factory=LinkSettings)
    logs_enabled: bool = DEFAULT_LOGS_ENABLED
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION


@dataclass
class Settings:
    """Resolved runtime settings for one CLI invocation."""

    project_root: Path
    config_root: Path
    delay_seconds: int = DEFAULT_DELAY_SECONDS
    ui_placement: str = DEFAULT_UI_PLACEMENT
    link: LinkSettings = field(default_factory=LinkSettings)
    logs_enabled: bool = DEFAULT_LOGS_ENABLED
    logs_max_file_bytes: int = DEFAULT_LOGS_MAX_FILE_BYTES
    logs_max_files: int = DEFAULT_LOGS_MAX_FILES
    logs_redaction: str = DEFAULT_LOGS_REDACTION

    @property
    def logs_dir(self) -> Path:
        return self.config_root / LOGS_DIR_NAME

    @property
    def history_db(self) -> Path:
        return self.config_root / HISTORY_DB_NAME

    @property
    def delay_ms(self) -> int:
        return self.delay_seconds * 1000


def resolve_project_root(workspace_dir: Optional[Path] = None) -> Path:
    return (workspace_dir or Path.cwd()).resolve()


def resolve_project_config_root(workspace_dir: Optional[Path] = None) -> Path:
    return resolve_project_root(workspace_dir) / CONFIG_DIR_NAME


def project_config_exists(workspace_dir: Optional[Path] = None) -> bool:
    config_root = resolve_project_config_root(workspace_dir)
    return config_root.is_dir() and (config_root / CONFIG_FILE_NAME).is_file()


def _safe_positive_int(value: object, default: int) -> int:
    try:
        converted = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    return max(1, converted)


def _safe_non_negative_int(value: object, default: int) -> int:
    if isinstance(value, bool):
        return default
    try:
        converted = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted < 0:
        return default
    return converted


def _safe_positive_int_or_default(value: object, default: int) -> int:
    try:
        converted = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
    if converted <= 0:
        return default
    return converted


def _safe_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
    return default


def _safe_placement(value: object, default: str) -> str:
    normalized = str(value or default).strip().lower()
    if normalized not in ALLOWED_UI_PLACEMENTS:
        return default
    return normalized


def _safe_redaction(value: object, default: str) -> str:
    normalized = str(value or default).strip().lower()
    if normalized not in ALLOWED_LOG_REDACTION:
        return default
    return normalized


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key)
    return value if isinstance(value, dict) else {}


def _parse_link_settings(link: Dict[str, Any]) -> LinkSettings:
    base_ms = _safe_positive_int_or_default(link.get("backoff_base_ms"), DEFAULT_BACKOFF_BASE_MS)
    cap_ms = _safe_positive_int_or_default(link.get("backoff_cap_ms"), DEFAULT_BACKOFF_CAP_MS)
    return LinkSettings(
        probe_timeout_ms=_safe_positive_int_or_default(link.get("probe_timeout_ms"), DEFAULT_PROBE_TIMEOUT_MS),
        visible_interval_ms=_safe_positive_int_or_default(
            link.get("visible_interval_ms"),
            DEFAULT_VISIBLE_INTERVAL_MS,
        ),
        hidden_interval_ms=_safe_positive_int_or_default(
            link.get("hidden_interval_ms"),
            DEFAULT_HIDDEN_INTERVAL_MS,
        ),
        settle_delay_ms=_safe_non_negative_int(link.get("settle_delay_ms"), DEFAULT_SETTLE_DELAY_MS),
        max_reconnect_attempts=_safe_positive_int(
            link.get("max_reconnect_attempts"),
            DEFAULT_MAX_RECONNECT_ATTEMPTS,
        ),
        backoff_base_ms=base_ms,
        backoff_cap_ms=max(base_ms, cap_ms),
        cooldown_ms=_safe_non_negative_int(link.get("cooldown_ms"), DEFAULT_COOLDOWN_MS),
        rebuild_failure_threshold=_safe_positive_int(
            link.get("rebuild_failure_threshold"),
            DEFAULT_REBUILD_FAILURE_THRESHOLD,
        ),
    )


def _parse_project_config_data(data: Dict[str, Any]) -> ProjectConfig:
    queue = _section(data, "queue")
    ui = _section(data, "ui")
    runtime = _section(data, "runtime")
    logs = _section(runtime, "logs")
    return ProjectConfig(
        delay_seconds=_safe_non_negative_int(queue.get("delay_seconds"), DEFAULT_DELAY_SECONDS),
        ui_placement=_safe_placement(ui.get("placement"), DEFAULT_UI_PLACEMENT),
        link=_parse_link_settings(_section(data, "link")),
        logs_enabled=_safe_bool(logs.get("enabled"), DEFAULT_LOGS_ENABLED),
        logs_max_file_bytes=_safe_positive_int_or_default(
            logs.get("max_file_bytes"),
            DEFAULT_LOGS_MAX_FILE_BYTES,
        ),
        logs_max_files=_safe_positive_int_or_default(logs.get("max_files"), DEFAULT_LOGS_MAX_FILES),
        logs_redaction=_safe_redaction(logs.get("redaction"), DEFAULT_LOGS_REDACTION),
    )


def _render_project_config(config: ProjectConfig) -> str:
    lines: List[str] = [
        "[queue]",
        "delay_seconds = {0}".format(_safe_non_negative_int(config.delay_seconds, DEFAULT_DELAY_SECONDS)),
        "",
        "[ui]",
        'placement = "{0}"'.format(_safe_placement(config.ui_placement, DEFAULT_UI_PLACEMENT)),
        "",
        "[link]",
    ]
    for key, value in config.link.as_dict().items():
        lines.append("{0} = {1}".format(key, int(value)))
    lines.extend(
        [
            "",
            "[runtime.logs]",
            "enabled = {0}".format(str(bool(config.logs_enabled)).lower()),
            "max_file_bytes = {0}".format(
                _safe_positive_int_or_default(config.logs_max_file_bytes, DEFAULT_LOGS_MAX_FILE_BYTES)
            ),
            "max_files = {0}".format(_safe_positive_int_or_default(config.logs_max_files, DEFAULT_LOGS_MAX_FILES)),
            'redaction = "{0}"'.format(_safe_redaction(config.logs_redaction, DEFAULT_LOGS_REDACTION)),
            "",
        ]
    )
    return "\n".join(lines)


def initialize_project_config(workspace_dir: Optional[Path] = None, force: bool = False) -> Path:
    project_root = resolve_project_root(workspace_dir)
    config_root = resolve_project_config_root(project_root)
    config_file = config_root / CONFIG_FILE_NAME

    if config_root.exists():
        if not force:
            raise ProjectConfigError(
                "配置目录已存在：{0} (configuration directory already exists)".format(config_root)
            )
        shutil.rmtree(config_root)

    (config_root / LOGS_DIR_NAME).mkdir(parents=True, exist_ok=True)
    config_file.write_text(_render_project_config(ProjectConfig()), encoding="utf-8")
    return config_root


def load_project_config(config_root: Optional[Path] = None, workspace_dir: Optional[Path] = None) -> ProjectConfig:
    resolved_root = (config_root or resolve_project_config_root(workspace_dir)).resolve()
    config_file = resolved_root / CONFIG_FILE_NAME
    if not resolved_root.is_dir() or not config_file.is_file():
        raise ProjectConfigError(
            "缺少项目配置目录：{0}，请先执行 `gacha init` (missing project config directory)".format(
                resolved_root
            )
        )

    try:
        parsed = tomllib.loads(config_file.read_text(encoding="utf-8"))
    except Exception as exc:
        raise ProjectConfigError("配置文件无效：{0} (invalid config file)".format(config_file)) from exc

    if not isinstance(parsed, dict):
        raise ProjectConfigError("配置文件无效：{0} (invalid config file)".format(config_file))

    return _parse_project_config_data(parsed)


def save_project_config(
    config: ProjectConfig,
    config_root: Optional[Path] = None,
    workspace_dir: Optional[Path] = None,
) -> Path:
    resolved_root = (config_root or resolve_project_config_root(workspace_dir)).resolve()
    config_file = resolved_root / CONFIG_FILE_NAME
    if not resolved_root.is_dir():
        raise ProjectConfigError(
            "缺少项目配置目录：{0}，请先执行 `gacha init` (missing project config directory)".format(
                resolved_root
            )
        )
    config_file.write_text(_render_project_config(config), encoding="utf-8")
    return config_file


def set_task_delay(seconds: int, workspace_dir: Optional[Path] = None) -> int:
    if isinstance(seconds, bool) or not isinstance(seconds, int) or seconds < 0:
        raise ProjectConfigError(
            "无效的任务间隔：'{0}'，需为非负整数秒 (delay must be a non-negative integer)".format(seconds)
        )
    config = load_project_config(workspace_dir=workspace_dir)
    config.delay_seconds = seconds
    save_project_config(config, workspace_dir=workspace_dir)
    return seconds


def set_ui_placement(mode: str, workspace_dir: Optional[Path] = None) -> str:
    normalized = str(mode or "").strip().lower()
    if normalized not in ALLOWED_UI_PLACEMENTS:
        raise ProjectConfigError(
            "不支持的界面模式：'{0}'，可选值：{1} (unsupported placement)".format(
                mode,
                "|".join(ALLOWED_UI_PLACEMENTS),
            )
        )
    config = load_project_config(workspace_dir=workspace_dir)
    config.ui_placement = normalized
    save_project_config(config, workspace_dir=workspace_dir)
    return normalized


def load_settings(
    delay_seconds: Optional[int] = None,
    workspace_dir: Optional[Path] = None,
) -> Settings:
    """Resolve settings from project config + explicit overrides."""

    project_root = resolve_project_root(workspace_dir)
    config_root = resolve_project_config_root(project_root)
    project_config = load_project_config(config_root=config_root)

    resolved_delay = _safe_non_negative_int(
        delay_seconds if delay_seconds is not None else project_config.delay_seconds,
        project_config.delay_seconds,
    )
    return Settings(
        project_root=project_root,
        config_root=config_root,
        delay_seconds=resolved_delay,
        ui_placement=project_config.ui_placement,
        link=replace(project_config.link),
        logs_enabled=project_config.logs_enabled,
        logs_max_file_bytes=project_config.logs_max_file_bytes,
        logs_max_files=project_config.logs_max_files,
        logs_redaction=project_config.logs_redaction,
    )

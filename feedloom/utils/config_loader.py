from __future__ import annotations

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import yaml

from ..errors import ConfigError
from ..models import (
    AIConfig,
    Category,
    CategoryPackage,
    ClassifyStrategy,
    Config,
    Folder,
    FolderEntry,
    PostProcessConfig,
    Schedule,
    Source,
)
from ..models.source import DEFAULT_API_BASE, DEFAULT_MODEL
from ..scheduling.interval import parse_time_of_day
from .logging import get_logger

logger = get_logger("fl.config")

REQUIRED_SOURCE_FIELDS = {"url"}
POST_PROCESS_MODES = {"ai", "script"}


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _as_int(entry: dict, key: str, default: int = 0) -> int:
    value = entry.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")


def _str_list(entry: dict, key: str) -> List[str]:
    value = entry.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(v, (str, int)) for v in value):
        raise ConfigError(f"'{key}' must be a list of strings if provided")
    return [str(v).strip() for v in value if str(v).strip()]


def _validate_source_dict(entry: dict) -> None:
    """Validate a single source mapping.

    Required fields: url (absolute http/https).
    Optional mappings ``classify`` and ``postProcess`` must be objects.
    """
    missing = REQUIRED_SOURCE_FIELDS - set(entry)
    if missing:
        raise ConfigError(f"Missing required fields: {sorted(missing)} in {entry}")

    url_str = str(entry["url"]).strip()
    parsed = urlparse(url_str)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ConfigError(f"Invalid URL '{url_str}'. Must be absolute http(s) URL.")

    for key in ("classify", "postProcess"):
        if entry.get(key) is not None and not isinstance(entry[key], dict):
            raise ConfigError(f"'{key}' must be a mapping for source {url_str}")

    post = entry.get("postProcess") or {}
    mode = post.get("mode") or "ai"
    if mode not in POST_PROCESS_MODES:
        raise ConfigError(f"Invalid postProcess.mode '{mode}' for source {url_str}. Use 'ai' or 'script'.")


def _coerce_classify(entry: Optional[dict]) -> Optional[ClassifyStrategy]:
    if entry is None:
        return None
    return ClassifyStrategy(
        keyword_enabled=_as_bool(entry.get("keywordEnabled", False)),
        ai_enabled=_as_bool(entry.get("aiEnabled", False)),
        filter_keywords=_str_list(entry, "filterKeywords"),
        keep_keywords=_str_list(entry, "keepKeywords"),
        whitelist_mode=_as_bool(entry.get("whitelistMode", False)),
        script_filter_enabled=_as_bool(entry.get("scriptFilterEnabled", False)),
        script_filter_content=str(entry.get("scriptFilterContent") or ""),
        bound_categories=_str_list(entry, "boundCategories"),
        category_blacklist=_str_list(entry, "categoryBlacklist"),
        category_whitelist=_str_list(entry, "categoryWhitelist"),
        custom_prompt=str(entry.get("customPrompt") or ""),
    )


def _coerce_post_process(entry: Optional[dict]) -> Optional[PostProcessConfig]:
    if entry is None:
        return None
    return PostProcessConfig(
        enabled=_as_bool(entry.get("enabled", False)),
        mode=str(entry.get("mode") or "ai"),  # type: ignore[arg-type]
        prompt=str(entry.get("prompt") or ""),
        script_path=str(entry.get("scriptPath") or ""),
        script_content=str(entry.get("scriptContent") or ""),
        modify_title=_as_bool(entry.get("modifyTitle", False)),
        modify_link=_as_bool(entry.get("modifyLink", False)),
        modify_pub_date=_as_bool(entry.get("modifyPubDate", False)),
    )


def _coerce_source(entry: dict) -> Source:
    return Source(
        url=str(entry["url"]).strip(),
        name=str(entry.get("name") or "").strip(),
        icon=str(entry.get("icon") or "").strip(),
        refresh_count=_as_int(entry, "refreshCount"),
        max_items=_as_int(entry, "maxItems"),
        cache_items=_as_int(entry, "cacheItems"),
        ignore_original_pub_date=_as_bool(entry.get("ignoreOriginalPubDate", False)),
        ranking_mode=_as_bool(entry.get("rankingMode", False)),
        classify=_coerce_classify(entry.get("classify")),
        post_process=_coerce_post_process(entry.get("postProcess")),
    )


def _coerce_category(entry: dict) -> Category:
    if not isinstance(entry, dict) or not entry.get("id"):
        raise ConfigError(f"Each category needs an 'id', got: {entry!r}")
    return Category(
        id=str(entry["id"]),
        name=str(entry.get("name") or ""),
        description=str(entry.get("description") or ""),
    )


def _coerce_ai(entry: dict) -> AIConfig:
    packages = []
    for pkg in entry.get("categoryPackages") or []:
        if not isinstance(pkg, dict) or not pkg.get("id"):
            raise ConfigError(f"Each category package needs an 'id', got: {pkg!r}")
        packages.append(
            CategoryPackage(
                id=str(pkg["id"]),
                name=str(pkg.get("name") or ""),
                categories=[_coerce_category(c) for c in pkg.get("categories") or []],
            )
        )
    # Zero/missing values fall back to defaults; a negative retry count means a single attempt.
    return AIConfig(
        enabled=_as_bool(entry.get("enabled", False)),
        api_key=str(entry.get("apiKey") or os.getenv("FEEDLOOM_AI_API_KEY", "")),
        api_base=str(entry.get("apiBase") or DEFAULT_API_BASE),
        model=str(entry.get("model") or DEFAULT_MODEL),
        system_prompt=str(entry.get("systemPrompt") or ""),
        max_tokens=_as_int(entry, "maxTokens") or 500,
        temperature=float(entry.get("temperature") or 0.1),
        timeout=_as_int(entry, "timeout") or 30,
        concurrency=max(_as_int(entry, "concurrency"), 0) or 5,
        max_desc_length=max(_as_int(entry, "maxDescLength"), 0) or 2000,
        batch_size=max(_as_int(entry, "batchSize"), 0) or 5,
        retry_count=max(_as_int(entry, "retryCount") or 3, 1),
        retry_wait=float(entry.get("retryWait") or 2),
        category_packages=packages,
    )


def _coerce_schedule(entry: dict) -> Schedule:
    if not isinstance(entry, dict):
        raise ConfigError(f"Each schedule must be a mapping, got: {type(entry)}")
    schedule = Schedule(
        start_time=str(entry.get("startTime") or "").strip(),
        end_time=str(entry.get("endTime") or "").strip(),
        base_refresh=_as_int(entry, "baseRefresh"),
        default_count=_as_int(entry, "defaultCount"),
    )
    start = parse_time_of_day(schedule.start_time)
    end = parse_time_of_day(schedule.end_time)
    if start is None or end is None or start == end:
        logger.warning(
            "Schedule %r-%r is degenerate and will never match", schedule.start_time, schedule.end_time
        )
    return schedule


def _coerce_folder(entry: dict) -> Folder:
    if not isinstance(entry, dict) or not entry.get("id"):
        raise ConfigError(f"Each folder needs an 'id', got: {entry!r}")
    entries = [
        FolderEntry(
            source_url=str(e.get("sourceUrl") or ""),
            category_package_id=str(e.get("categoryPackageId") or ""),
        )
        for e in entry.get("entries") or []
        if isinstance(e, dict)
    ]
    return Folder(id=str(entry["id"]), name=str(entry.get("name") or ""), entries=entries)


def parse_config(data: Dict[str, Any]) -> Config:
    """Build a typed ``Config`` from an already-decoded mapping.

    Unknown top-level keys are kept in ``Config.raw`` and written back
    untouched by :func:`save_config`.
    """
    if not isinstance(data, dict):
        raise ConfigError("Configuration root must be a mapping")

    sources_raw = data.get("sources") or []
    if not isinstance(sources_raw, list):
        raise ConfigError("'sources' must be a list in the configuration")

    sources: List[Source] = []
    seen: set[str] = set()
    for item in sources_raw:
        if not isinstance(item, dict):
            raise ConfigError(f"Each source must be a mapping, got: {type(item)}")
        _validate_source_dict(item)
        source = _coerce_source(item)
        if source.url in seen:
            raise ConfigError(f"Duplicate source URL: {source.url}")
        seen.add(source.url)
        sources.append(source)

    ai_raw = data.get("aiClassify") or data.get("aiFilter") or {}
    if not isinstance(ai_raw, dict):
        raise ConfigError("'aiClassify' must be a mapping")

    return Config(
        sources=sources,
        schedules=[_coerce_schedule(s) for s in data.get("schedules") or []],
        ai=_coerce_ai(ai_raw),
        categories=[_coerce_category(c) for c in data.get("categories") or []],
        folders=[_coerce_folder(f) for f in data.get("folders") or []],
        raw=copy.deepcopy(data),
    )


def load_config(path: Path | str) -> Config:
    """Load the configuration file (JSON, or YAML by suffix) into a typed ``Config``."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        text = config_path.read_text(encoding="utf-8")
        if config_path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text) if text.strip() else {}
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Cannot read config {config_path}: {exc}") from exc
    return parse_config(data)


def save_config(config: Config, path: Path | str) -> None:
    """Write ``config.raw`` back atomically (temporary file + rename)."""
    config_path = Path(path)
    config_path.parent.mkdir(parents=True, exist_ok=True)
    if config_path.suffix.lower() in {".yaml", ".yml"}:
        payload = yaml.safe_dump(config.raw, allow_unicode=True, sort_keys=False)
    else:
        payload = json.dumps(config.raw, ensure_ascii=False, indent=4)
    tmp_path = config_path.with_name(config_path.name + ".tmp")
    tmp_path.write_text(payload, encoding="utf-8")
    os.replace(tmp_path, config_path)


def set_source_name(config: Config, url: str, name: str) -> bool:
    """Record a discovered display name for a source that has none.

    Returns True if the configuration changed. An existing name always wins.
    """
    source = config.source_by_url(url)
    if source is None or source.name or not name:
        return False
    source.name = name
    for entry in config.raw.get("sources") or []:
        if isinstance(entry, dict) and str(entry.get("url", "")).strip() == url:
            entry["name"] = name
            break
    return True

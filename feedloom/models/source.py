from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

PostProcessMode = Literal["ai", "script"]

# Categories assigned by the keyword stage rather than by the AI backend.
KEEP_CATEGORY = "_keep"
FILTERED_CATEGORY = "_filtered"

DEFAULT_API_BASE = "https://api.openai.com/v1"
DEFAULT_MODEL = "gpt-4o-mini"


@dataclass(slots=True)
class Category:
    id: str
    name: str = ""
    description: str = ""


@dataclass(slots=True)
class CategoryPackage:
    id: str
    name: str = ""
    categories: List[Category] = field(default_factory=list)


@dataclass(slots=True)
class ClassifyStrategy:
    """Per-source keyword/AI/script classification settings."""

    keyword_enabled: bool = False
    ai_enabled: bool = False
    filter_keywords: List[str] = field(default_factory=list)
    keep_keywords: List[str] = field(default_factory=list)
    whitelist_mode: bool = False
    script_filter_enabled: bool = False
    script_filter_content: str = ""
    bound_categories: List[str] = field(default_factory=list)
    category_blacklist: List[str] = field(default_factory=list)
    category_whitelist: List[str] = field(default_factory=list)
    custom_prompt: str = ""

    @property
    def uses_keywords(self) -> bool:
        return self.keyword_enabled or self.whitelist_mode

    @property
    def uses_script(self) -> bool:
        return self.script_filter_enabled and bool(self.script_filter_content.strip())


@dataclass(slots=True)
class PostProcessConfig:
    enabled: bool = False
    mode: PostProcessMode = "ai"
    prompt: str = ""
    script_path: str = ""
    script_content: str = ""
    modify_title: bool = False
    modify_link: bool = False
    modify_pub_date: bool = False


@dataclass(slots=True)
class Source:
    """Configuration for one remote feed. Identity is the URL."""

    url: str
    name: str = ""
    icon: str = ""
    refresh_count: int = 0
    max_items: int = 0
    # -1 disables the retained-items cache, 0 keeps everything just produced, N caps it.
    cache_items: int = 0
    ignore_original_pub_date: bool = False
    ranking_mode: bool = False
    classify: Optional[ClassifyStrategy] = None
    post_process: Optional[PostProcessConfig] = None

    @property
    def retains_items(self) -> bool:
        return self.cache_items >= 0

    @property
    def post_process_enabled(self) -> bool:
        return self.post_process is not None and self.post_process.enabled


@dataclass(slots=True)
class Schedule:
    start_time: str
    end_time: str
    base_refresh: int
    default_count: int = 0


@dataclass(slots=True)
class AIConfig:
    enabled: bool = False
    api_key: str = ""
    api_base: str = DEFAULT_API_BASE
    model: str = DEFAULT_MODEL
    system_prompt: str = ""
    max_tokens: int = 500
    temperature: float = 0.1
    timeout: int = 30
    concurrency: int = 5
    max_desc_length: int = 2000
    batch_size: int = 5
    retry_count: int = 3
    retry_wait: float = 2.0
    category_packages: List[CategoryPackage] = field(default_factory=list)

    @property
    def available(self) -> bool:
        return self.enabled and bool(self.api_key)


@dataclass(slots=True)
class FolderEntry:
    source_url: str = ""
    category_package_id: str = ""


@dataclass(slots=True)
class Folder:
    id: str
    name: str = ""
    entries: List[FolderEntry] = field(default_factory=list)


@dataclass(slots=True)
class Config:
    """Parsed configuration. ``raw`` keeps the original mapping for save-back."""

    sources: List[Source] = field(default_factory=list)
    schedules: List[Schedule] = field(default_factory=list)
    ai: AIConfig = field(default_factory=AIConfig)
    categories: List[Category] = field(default_factory=list)
    folders: List[Folder] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def all_urls(self) -> List[str]:
        return [s.url for s in self.sources if s.url]

    def source_by_url(self, url: str) -> Optional[Source]:
        for source in self.sources:
            if source.url == url:
                return source
        return None

    def folder_by_id(self, folder_id: str) -> Optional[Folder]:
        for folder in self.folders:
            if folder.id == folder_id:
                return folder
        return None

    def ai_categories(self) -> List[Category]:
        """Category taxonomy offered to the AI: package union, else the global list."""
        if not self.ai.category_packages:
            return list(self.categories)
        cats: List[Category] = []
        for pkg in self.ai.category_packages:
            cats.extend(pkg.categories)
        return cats

    def sources_for_package(self, package_id: str) -> List[Source]:
        pkg = next((p for p in self.ai.category_packages if p.id == package_id), None)
        if pkg is None or not pkg.categories:
            return []
        ids = {c.id for c in pkg.categories}
        matched: List[Source] = []
        for source in self.sources:
            strategy = source.classify
            if strategy is None or not strategy.ai_enabled:
                continue
            if any(cid in ids for cid in strategy.bound_categories):
                matched.append(source)
        return matched

    def folder_source_urls(self, folder: Folder) -> List[str]:
        urls: List[str] = []
        for entry in folder.entries:
            if entry.category_package_id:
                urls.extend(s.url for s in self.sources_for_package(entry.category_package_id))
            elif entry.source_url:
                urls.append(entry.source_url)
        return urls

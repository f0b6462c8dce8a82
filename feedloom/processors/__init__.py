"""Classification & filter pipeline, post-processing and text helpers."""

from .classify import ClassificationPipeline, ClassifyOutcome, should_filter, uses_ai
from .keywords import keyword_category
from .normalize import clean_html_to_text, parse_timestamp, truncate_text
from .postprocess import PostProcessor
from .script_filter import apply_script_filter

__all__ = [
    "ClassificationPipeline",
    "ClassifyOutcome",
    "should_filter",
    "uses_ai",
    "keyword_category",
    "clean_html_to_text",
    "parse_timestamp",
    "truncate_text",
    "PostProcessor",
    "apply_script_filter",
]

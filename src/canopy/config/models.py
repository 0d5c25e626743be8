"""Settings schema for the tree engine."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator

EmptyExpandedPolicy = Literal["collapse", "keep"]


class FetchSettings(BaseModel):
    page_size: int = Field(default=50, ge=1, le=10000)
    viewport_pages_before: int = Field(default=2, ge=0, le=100)
    viewport_pages_after: int = Field(default=2, ge=0, le=100)
    max_rounds: int = Field(default=64, ge=1, description="Load passes per ensure_loaded call")
    row_ttl_s: float | None = Field(default=None, gt=0)


class CacheSettings(BaseModel):
    max_cached_rows: int = Field(default=5000, ge=1)


class ExpansionSettings(BaseModel):
    empty_expanded_policy: EmptyExpandedPolicy = Field(default="collapse")
    recursive_child_limit: int = Field(default=10000, ge=1)


class EngineSettings(BaseModel):
    schema_version: int = Field(default=1)
    strict: bool = Field(default=False, description="Re-check cache invariants after every mutation")
    fetch: FetchSettings = Field(default_factory=FetchSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    expansion: ExpansionSettings = Field(default_factory=ExpansionSettings)

    @model_validator(mode="after")
    def check_cache_holds_a_page(self) -> "EngineSettings":
        if self.cache.max_cached_rows < self.fetch.page_size:
            raise ValueError("cache.max_cached_rows must be at least fetch.page_size")
        return self

    def setting_items(self) -> list[tuple[str, str]]:
        """Flatten key/value pairs for display."""

        result: list[tuple[str, str]] = []

        def walk(prefix: str, value: object) -> None:
            if isinstance(value, dict):
                for key, nested in value.items():
                    walk(f"{prefix}.{key}" if prefix else key, nested)
            else:
                result.append((prefix, str(value)))

        walk("", self.model_dump())
        return result

"""Pydantic config models.

Every curator operation takes a :class:`CuratorConfig` value explicitly;
there is no module-level configuration state.
"""

from __future__ import annotations

from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..exceptions import ValidationError

DigestKind = Literal["crc32", "md5", "sha1"]

DEFAULT_REGION_PRIORITY = ["USA", "WOR", "EUR", "JPN"]
DEFAULT_LANGUAGE_PRIORITY = ["en"]


class _BaseConfigModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class CatalogConfig(_BaseConfigModel):
    store_path: str = "data/romcurator.sqlite"
    lock_path: Optional[str] = None
    prune_on_import: bool = False


class MatchingConfig(_BaseConfigModel):
    hash_algorithm: DigestKind = "sha1"
    allow_weak_match: bool = True
    include_hidden: bool = False
    chunk_size: int = Field(default=1024 * 1024, ge=4096)

    @field_validator("hash_algorithm", mode="before")
    @classmethod
    def _lower_algorithm(cls, value: Any) -> Any:
        return value.strip().lower() if isinstance(value, str) else value


class PreferenceConfig(_BaseConfigModel):
    regions: List[str] = Field(default_factory=lambda: list(DEFAULT_REGION_PRIORITY))
    languages: List[str] = Field(default_factory=lambda: list(DEFAULT_LANGUAGE_PRIORITY))
    require_complete: bool = True

    @field_validator("regions", mode="after")
    @classmethod
    def _upper_regions(cls, value: List[str]) -> List[str]:
        return [str(v).strip().upper() for v in value if str(v).strip()]

    @field_validator("languages", mode="after")
    @classmethod
    def _lower_languages(cls, value: List[str]) -> List[str]:
        return [str(v).strip().lower() for v in value if str(v).strip()]


class ConversionConfig(_BaseConfigModel):
    keep_source: bool = False
    zip_compression_level: int = Field(default=9, ge=0, le=9)
    cso_block_size: int = Field(default=2048, ge=512)
    cso_compression_level: int = Field(default=9, ge=1, le=9)
    chdman_path: Optional[str] = None
    chdman_timeout_sec: Optional[float] = None
    temp_dir: Optional[str] = None


class OrganizeConfig(_BaseConfigModel):
    trash_dir: str = "Trash"
    trash_unmatched: bool = False

    @field_validator("trash_dir", mode="after")
    @classmethod
    def _plain_dir_name(cls, value: str) -> str:
        name = str(value).strip()
        if not name or name in (".", "..") or "/" in name or "\\" in name:
            raise ValueError("trash_dir must be a single directory name")
        return name


class PerformanceConfig(_BaseConfigModel):
    workers: Optional[int] = Field(default=None, ge=1)
    io_limit: int = Field(default=16, ge=1)


class LoggingConfig(_BaseConfigModel):
    level: str = "INFO"
    log_dir: Optional[str] = None
    file_logging: bool = False
    json_format: Optional[bool] = None
    max_log_size: str = "10MB"
    backup_count: int = Field(default=3, ge=0)


class CuratorConfig(_BaseConfigModel):
    library_root: Optional[str] = None
    catalog: CatalogConfig = Field(default_factory=CatalogConfig)
    matching: MatchingConfig = Field(default_factory=MatchingConfig)
    preferences: PreferenceConfig = Field(default_factory=PreferenceConfig)
    conversion: ConversionConfig = Field(default_factory=ConversionConfig)
    organize: OrganizeConfig = Field(default_factory=OrganizeConfig)
    performance: PerformanceConfig = Field(default_factory=PerformanceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def validate_config(payload: Optional[Dict[str, Any]]) -> CuratorConfig:
    """Validate a raw mapping into a :class:`CuratorConfig`.

    Pydantic failures are re-raised as the project's ``ValidationError``
    carrying the first offending field.
    """
    from pydantic import ValidationError as PydanticValidationError

    try:
        return CuratorConfig.model_validate(payload or {})
    except PydanticValidationError as exc:
        errors = exc.errors()
        first = errors[0] if errors else {}
        field_name = ".".join(str(p) for p in first.get("loc", ())) or None
        raise ValidationError(
            f"Invalid configuration: {first.get('msg', exc)}",
            field_name=field_name,
            details={"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in errors]},
        ) from exc

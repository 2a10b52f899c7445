"""Function manifests.

A manifest describes one function a driver can run: its default args,
failure policy and usage text. Native functions declare it in code, shell
functions ship it as `manifest.json` next to their entrypoint.
"""
from __future__ import annotations
from pathlib import Path
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ManifestError


class UsageDesc(BaseModel):
    name: str
    desc: str = ""


class Usage(BaseModel):
    desc: str = ""
    args: List[UsageDesc] = Field(default_factory=list)
    returns: List[UsageDesc] = Field(default_factory=list)


class Manifest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    driver: str = ""
    entrypoint: str = ""
    args: Dict[str, str] = Field(default_factory=dict)
    retry_on_failure: int = Field(default=0, ge=0, alias="retryOnFailure")
    ignore_failure: bool = Field(default=False, alias="ignoreFailure")
    usage: Usage = Field(default_factory=Usage)

    @field_validator("args", mode="before")
    @classmethod
    def stringify_args(cls, v):
        """Arg defaults are strings; numbers and bools in JSON are stringified."""
        if v is None:
            return {}
        if isinstance(v, dict):
            out = {}
            for k, val in v.items():
                if isinstance(val, bool):
                    out[str(k)] = "true" if val else "false"
                else:
                    out[str(k)] = str(val)
            return out
        return v

    @classmethod
    def from_file(cls, path: Path) -> "Manifest":
        try:
            return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))
        except OSError as e:
            raise ManifestError(f"cannot read manifest '{path}': {e}") from e
        except ValidationError as e:
            raise ManifestError(f"invalid manifest '{path}': {e}") from e

from __future__ import annotations

"""
annoflow.pipeline.config
========================

Options of the annotation pipeline.

Recognized groups:
  input.{file,type}                         sequence file and its alphabet
  data.{interproscan,nr,sprot,orthodb,string}  external resource locations
  steps.<branch>.enable                     one toggle per analysis branch
  steps.orthodb.{db,levels}                 category and levels driving expansion
  output.dir                                where the terminal reports land
  chunk_size                                records per work unit
  resources.<node>.{cpus,memory_mb}         per-step resource requests

`PipelineConfig.load()` accepts JSON or YAML (by file suffix). Validation
problems surface as ConfigurationError carrying the dotted option key.
"""

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from ..api.errors import ConfigurationError
from ..graph.spec import ResourceSpec

SEARCH_MODES: dict[str, str] = {
    "nucleotide": "blastx",
    "protein": "blastp",
    "peptide": "blastp",
}

BRANCHES = ("interproscan", "nr", "sprot", "string", "orthodb")
INDEXED_DBS = ("nr", "sprot", "string")


class _Section(BaseModel):
    model_config = {"extra": "forbid"}


class InputOptions(_Section):
    file: Path
    type: str = "protein"


class DataOptions(_Section):
    interproscan: Path | None = None
    nr: Path | None = None
    sprot: Path | None = None
    orthodb: Path | None = None
    string: Path | None = None


class StepToggle(_Section):
    enable: bool = False


class OrthoDBStep(StepToggle):
    db: str = "odb"
    levels: list[str] = Field(default_factory=list)


class StepsOptions(_Section):
    interproscan: StepToggle = Field(default_factory=lambda: StepToggle(enable=True))
    nr: StepToggle = Field(default_factory=StepToggle)
    sprot: StepToggle = Field(default_factory=StepToggle)
    string: StepToggle = Field(default_factory=StepToggle)
    orthodb: OrthoDBStep = Field(default_factory=OrthoDBStep)

    def enabled(self, branch: str) -> bool:
        return bool(getattr(self, branch).enable)


class OutputOptions(_Section):
    dir: Path = Path("results")


class PipelineConfig(_Section):
    """Whole-pipeline options; see module docstring for the option groups."""

    input: InputOptions
    data: DataOptions = Field(default_factory=DataOptions)
    steps: StepsOptions = Field(default_factory=StepsOptions)
    output: OutputOptions = Field(default_factory=OutputOptions)
    chunk_size: int = Field(default=1000, ge=1)
    resources: dict[str, ResourceSpec] = Field(default_factory=dict)  # step node name -> request

    def search_mode(self) -> str:
        """Search mode tag used by every DIAMOND branch, derived from input.type."""
        mode = SEARCH_MODES.get(self.input.type.strip().lower())
        if mode is None:
            raise ConfigurationError(
                f"unsupported input type {self.input.type!r}; expected one of {sorted(SEARCH_MODES)}",
                key="input.type",
            )
        return mode

    def data_path(self, branch: str) -> Path | None:
        return getattr(self.data, branch)

    @classmethod
    def build(cls, data: Mapping[str, Any]) -> PipelineConfig:
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            first = e.errors()[0]
            loc = ".".join(str(p) for p in first.get("loc", ()))
            raise ConfigurationError(f"invalid pipeline option: {first.get('msg')}", key=loc or None) from e

    @classmethod
    def load(cls, path: Path | str, *, overrides: Mapping[str, Any] | None = None) -> PipelineConfig:
        """
        Read a JSON or YAML config file. Relative paths inside it are resolved
        against the config file's directory.
        """
        p = Path(path)
        if not p.is_file():
            raise ConfigurationError(f"pipeline config file not found: {p}", key="config")
        text = p.read_text(encoding="utf-8")
        try:
            if p.suffix.lower() in (".yaml", ".yml"):
                data = yaml.safe_load(text)
            else:
                data = json.loads(text)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"cannot parse {p.name}: {e}", key="config") from e
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{p.name} must hold a mapping at the top level", key="config")
        for dotted, value in (overrides or {}).items():
            _set_dotted(data, dotted, value)
        cfg = cls.build(data)
        return cfg.resolved(p.parent)

    def resolved(self, base: Path) -> PipelineConfig:
        """Copy with every relative path made relative to `base`."""

        def _abs(v: Path | None) -> Path | None:
            if v is None or v.is_absolute():
                return v
            return base / v

        return self.model_copy(
            update={
                "input": self.input.model_copy(update={"file": _abs(self.input.file)}),
                "data": DataOptions(**{b: _abs(self.data_path(b)) for b in BRANCHES}),
                "output": OutputOptions(dir=_abs(self.output.dir)),
            }
        )


def _set_dotted(data: dict[str, Any], dotted: str, value: Any) -> None:
    """`steps.nr.enable=True` style override into a nested mapping."""
    parts = dotted.split(".")
    node = data
    for part in parts[:-1]:
        nxt = node.setdefault(part, {})
        if not isinstance(nxt, dict):
            raise ConfigurationError(f"cannot override {dotted!r}: {part!r} is not a section", key=dotted)
        node = nxt
    node[parts[-1]] = value


__all__ = [
    "BRANCHES",
    "INDEXED_DBS",
    "SEARCH_MODES",
    "DataOptions",
    "InputOptions",
    "OrthoDBStep",
    "OutputOptions",
    "PipelineConfig",
    "StepToggle",
    "StepsOptions",
]

"""
Pipeline definitions — static stage graphs and the catalog that holds them.

A pipeline is an ordered tuple of stages. Each stage names the provider it
calls, its capability kind, an opaque request payload, whether it is
required, its timeout, and which earlier stages' outputs it consumes.
Dependencies may only point backwards, so every graph is acyclic.

Definitions are resolved once at startup into an immutable catalog;
there is no dynamic loading at run time.
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Iterator, Mapping

import yaml

from forge_engine.config import COMMAND_EXECUTION, LLM_API_CALL, SAMPLING, TOOL_CALL
from forge_engine.exceptions import PipelineDefinitionError

logger = logging.getLogger("forge.engine.pipeline")

DEFAULT_STAGE_TIMEOUT_MS = 120 * 1000


class StageKind(str, Enum):
    """Closed set of stage capabilities, each with its own rate-limit category."""

    COMPLETION = "completion"
    TOOL_CALL = "tool_call"
    SAMPLING = "sampling"
    COMMAND = "command"

    @property
    def category(self) -> str:
        return _KIND_CATEGORIES[self]


_KIND_CATEGORIES = {
    StageKind.COMPLETION: LLM_API_CALL,
    StageKind.TOOL_CALL: TOOL_CALL,
    StageKind.SAMPLING: SAMPLING,
    StageKind.COMMAND: COMMAND_EXECUTION,
}


@dataclass(frozen=True)
class StageSpec:
    name: str
    provider: str
    kind: StageKind = StageKind.COMPLETION
    request: Mapping[str, Any] = field(default_factory=dict)
    required: bool = True
    timeout_ms: int = DEFAULT_STAGE_TIMEOUT_MS
    depends_on: tuple[str, ...] = ()

    def __post_init__(self):
        if not self.name:
            raise PipelineDefinitionError("stage name must be non-empty")
        if not self.provider:
            raise PipelineDefinitionError(f"stage {self.name!r} has no provider")
        if self.timeout_ms <= 0:
            raise PipelineDefinitionError(
                f"stage {self.name!r} timeout must be positive, got {self.timeout_ms}"
            )
        object.__setattr__(self, "kind", StageKind(self.kind))
        object.__setattr__(self, "depends_on", tuple(self.depends_on))
        object.__setattr__(self, "request", MappingProxyType(dict(self.request)))

    @property
    def category(self) -> str:
        return self.kind.category


@dataclass(frozen=True)
class PipelineDefinition:
    """
    Named stage graph.

    Raises PipelineDefinitionError on construction when stage names repeat or
    a dependency names a stage that is not declared earlier.
    """

    name: str
    stages: tuple[StageSpec, ...]
    description: str = ""

    def __post_init__(self):
        object.__setattr__(self, "stages", tuple(self.stages))
        self.validate()

    def validate(self) -> None:
        if not self.name:
            raise PipelineDefinitionError("pipeline name must be non-empty")
        if not self.stages:
            raise PipelineDefinitionError(f"pipeline {self.name!r} has no stages")

        seen: set[str] = set()
        for stage in self.stages:
            if stage.name in seen:
                raise PipelineDefinitionError(
                    f"pipeline {self.name!r}: duplicate stage name {stage.name!r}"
                )
            for dep in stage.depends_on:
                if dep == stage.name:
                    raise PipelineDefinitionError(
                        f"pipeline {self.name!r}: stage {stage.name!r} depends on itself"
                    )
                if dep not in seen:
                    raise PipelineDefinitionError(
                        f"pipeline {self.name!r}: stage {stage.name!r} depends on "
                        f"{dep!r}, which is not an earlier stage"
                    )
            seen.add(stage.name)

    def stage(self, name: str) -> StageSpec:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    @property
    def stage_names(self) -> list[str]:
        return [s.name for s in self.stages]

    def __iter__(self) -> Iterator[StageSpec]:
        return iter(self.stages)

    def __len__(self) -> int:
        return len(self.stages)


class PipelineCatalog:
    """Immutable name → PipelineDefinition lookup built at startup."""

    def __init__(self, definitions: list[PipelineDefinition] | None = None):
        table: dict[str, PipelineDefinition] = {}
        for definition in definitions or []:
            if definition.name in table:
                raise PipelineDefinitionError(f"duplicate pipeline {definition.name!r}")
            table[definition.name] = definition
        self._table = MappingProxyType(table)

    def get(self, name: str) -> PipelineDefinition:
        try:
            return self._table[name]
        except KeyError:
            raise PipelineDefinitionError(
                f"unknown pipeline {name!r} (known: {', '.join(sorted(self._table)) or 'none'})"
            ) from None

    def __contains__(self, name: object) -> bool:
        return name in self._table

    def __len__(self) -> int:
        return len(self._table)

    @property
    def names(self) -> list[str]:
        return sorted(self._table)

    @property
    def definitions(self) -> Mapping[str, PipelineDefinition]:
        return self._table


def _stage_from_dict(pipeline: str, data: dict[str, Any]) -> StageSpec:
    if not isinstance(data, dict):
        raise PipelineDefinitionError(f"pipeline {pipeline!r}: stage entries must be mappings")
    unknown = set(data) - {
        "name", "provider", "kind", "request", "required", "timeout_ms", "depends_on",
    }
    if unknown:
        raise PipelineDefinitionError(
            f"pipeline {pipeline!r}: unknown stage keys {sorted(unknown)}"
        )
    try:
        kind = StageKind(data.get("kind", StageKind.COMPLETION.value))
    except ValueError:
        raise PipelineDefinitionError(
            f"pipeline {pipeline!r}: unknown stage kind {data.get('kind')!r}"
        ) from None
    depends_on = data.get("depends_on") or ()
    if isinstance(depends_on, str):
        depends_on = (depends_on,)
    return StageSpec(
        name=str(data.get("name", "")),
        provider=str(data.get("provider", "")),
        kind=kind,
        request=data.get("request") or {},
        required=bool(data.get("required", True)),
        timeout_ms=int(data.get("timeout_ms", DEFAULT_STAGE_TIMEOUT_MS)),
        depends_on=tuple(depends_on),
    )


def definitions_from_dict(data: dict[str, Any]) -> list[PipelineDefinition]:
    """Build definitions from ``{"pipelines": {name: {"stages": [...]}}}``."""
    pipelines = (data or {}).get("pipelines", {})
    if not isinstance(pipelines, dict):
        raise PipelineDefinitionError("'pipelines' must be a mapping of name to definition")
    definitions = []
    for name, body in pipelines.items():
        body = body or {}
        stages = [_stage_from_dict(name, s) for s in body.get("stages", [])]
        definitions.append(
            PipelineDefinition(
                name=name,
                stages=tuple(stages),
                description=str(body.get("description", "")),
            )
        )
    return definitions


def load_catalog(path: str | Path) -> PipelineCatalog:
    """
    Load a pipeline catalog from YAML.

    Raises:
        FileNotFoundError: If path doesn't exist
        PipelineDefinitionError: If any definition is invalid
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Pipeline catalog not found: {path}")
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    catalog = PipelineCatalog(definitions_from_dict(data))
    logger.info("Loaded %d pipeline(s) from %s", len(catalog), path.name)
    return catalog

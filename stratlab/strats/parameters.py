from __future__ import annotations

from typing import Dict, Mapping, Tuple

from pydantic import BaseModel, Field, model_validator

PARAMETER_SCHEMA_VERSION = 1


class ParameterSpec(BaseModel):
    """
    A named numeric strategy parameter with its search bounds.

    Attributes:
        name (str): Parameter name referenced by conditions via `ParamRef`.
        value (float): Current value.
        minimum (float): Lowest value the optimizer may try.
        maximum (float): Highest value the optimizer may try.
        step (float | None): Grid step; values snap to multiples of it.
        integer (bool): Whether the value is a whole number (e.g. a period).
    """

    name: str
    value: float
    minimum: float
    maximum: float
    step: float | None = None
    integer: bool = False

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _check_bounds(self) -> "ParameterSpec":
        if self.minimum > self.maximum:
            raise ValueError(f"{self.name}: minimum > maximum")
        return self

    def clamp(self, value: float) -> float:
        v = min(self.maximum, max(self.minimum, float(value)))
        if self.step:
            v = self.minimum + round((v - self.minimum) / self.step) * self.step
            v = min(self.maximum, max(self.minimum, v))
        if self.integer:
            v = float(int(round(v)))
        return round(v, 10)

    def with_value(self, value: float) -> "ParameterSpec":
        return self.model_copy(update={"value": self.clamp(value)})


class ParameterSet(BaseModel):
    """Closed, versioned set of named numeric parameters."""

    schema_version: int = PARAMETER_SCHEMA_VERSION
    specs: Tuple[ParameterSpec, ...] = Field(default_factory=tuple)

    model_config = {"frozen": True}

    @model_validator(mode="after")
    def _unique_names(self) -> "ParameterSet":
        names = [s.name for s in self.specs]
        if len(names) != len(set(names)):
            raise ValueError("parameter names must be unique")
        return self

    def names(self) -> Tuple[str, ...]:
        return tuple(s.name for s in self.specs)

    def has(self, name: str) -> bool:
        return any(s.name == name for s in self.specs)

    def get(self, name: str) -> ParameterSpec:
        for spec in self.specs:
            if spec.name == name:
                return spec
        raise KeyError(name)

    def value(self, name: str) -> float:
        return self.get(name).value

    def as_dict(self) -> Dict[str, float]:
        return {s.name: s.value for s in self.specs}

    def with_values(self, values: Mapping[str, float]) -> "ParameterSet":
        unknown = set(values) - {s.name for s in self.specs}
        if unknown:
            raise KeyError(f"unknown parameters: {sorted(unknown)}")
        specs = tuple(
            s.with_value(values[s.name]) if s.name in values else s for s in self.specs
        )
        return self.model_copy(update={"specs": specs})


__all__ = ["PARAMETER_SCHEMA_VERSION", "ParameterSpec", "ParameterSet"]

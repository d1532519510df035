from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import numpy as np


@dataclass(frozen=True)
class ParameterSchema:
    """Ordered, named layout of a subject-level random-effect vector.

    Position i of every particle holds the parameter `names[i]`. Likelihood
    functions receive numpy structured records built from this layout, so
    they read fields by name (`rec["v"]`) while positions stay fixed.
    """

    names: tuple[str, ...]

    def __post_init__(self) -> None:
        names = tuple(str(n) for n in self.names)
        if len(names) == 0:
            raise ValueError("ParameterSchema needs at least one parameter name.")
        if len(set(names)) != len(names):
            raise ValueError("ParameterSchema names must be unique.")
        object.__setattr__(self, "names", names)

    @property
    def size(self) -> int:
        return len(self.names)

    @property
    def dtype(self) -> np.dtype:
        return np.dtype([(n, np.float64) for n in self.names])

    def index(self, name: str) -> int:
        try:
            return self.names.index(str(name))
        except ValueError:
            raise KeyError(f"Unknown parameter {name!r}; schema has {list(self.names)}.") from None

    def records(self, values: np.ndarray) -> np.ndarray:
        """Convert an (n, size) array into a structured array of n records."""
        x = np.atleast_2d(np.asarray(values, dtype=float))
        if x.shape[1] != self.size:
            raise ValueError(f"Expected {self.size} columns for schema {list(self.names)}, got {x.shape[1]}.")
        out = np.empty(x.shape[0], dtype=self.dtype)
        for j, n in enumerate(self.names):
            out[n] = x[:, j]
        return out

    def as_dict(self, vector: np.ndarray) -> dict[str, float]:
        v = np.asarray(vector, dtype=float).reshape(-1)
        if v.size != self.size:
            raise ValueError(f"Expected a vector of length {self.size}, got {v.size}.")
        return {n: float(v[j]) for j, n in enumerate(self.names)}

    def to_jsonable(self) -> dict[str, Any]:
        return {"names": list(self.names)}

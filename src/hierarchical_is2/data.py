from __future__ import annotations

from typing import Sequence

import pandas as pd


def split_by_subject(
    data: pd.DataFrame,
    *,
    subject_col: str = "subject",
    subjects: Sequence | None = None,
) -> dict:
    """Partition a long-format data set into per-subject slices.

    When `subjects` is given (normally `PosteriorDraws.subjects`) every listed
    subject must be present; the returned dict follows that order.
    """
    if subject_col not in data.columns:
        raise ValueError(f"Column {subject_col!r} not found in data (columns: {list(data.columns)}).")
    groups = {k: g.reset_index(drop=True) for k, g in data.groupby(subject_col, sort=True)}
    if subjects is None:
        return groups
    missing = [s for s in subjects if s not in groups]
    if missing:
        raise ValueError(f"Subjects {missing[:5]} have no rows in column {subject_col!r}.")
    return {s: groups[s] for s in subjects}

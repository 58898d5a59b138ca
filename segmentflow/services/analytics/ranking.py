"""
Population ranking helpers with SQL window-function semantics, on pandas.

``ntile`` matches ``NTILE(n) OVER (ORDER BY value, id)`` and the percentile
helpers match ``PERCENTILE_CONT(p) WITHIN GROUP (ORDER BY value)``, so the
tenant sweep and single-customer rescoring agree with a database-side
ranking of the same population.
"""

from decimal import Decimal
from typing import Dict, Iterable, List, Sequence, Union

import pandas as pd

Number = Union[int, float, Decimal]


def ntile(values: pd.Series, buckets: int, descending: bool = False) -> pd.Series:
    """
    Assign each entry a bucket 1..buckets.

    Buckets differ in size by at most one and the larger buckets come first.
    Equal values are ordered by the series index ascending regardless of
    ``descending``, so the assignment never depends on input order.

    Returns an int series on the same labels, sorted by label.
    """
    if values.empty:
        return pd.Series([], index=values.index, dtype="int64")

    ordered = values.sort_index(kind="mergesort")
    # "first" ranks ties in index order
    position = ordered.rank(method="first", ascending=not descending).astype("int64") - 1

    base, extra = divmod(len(ordered), buckets)
    boundary = extra * (base + 1)
    head = position // (base + 1) + 1
    tail = extra + (position - boundary) // max(base, 1) + 1
    return head.where(position < boundary, tail).astype("int64")


def _as_series(values: Iterable[Number]) -> pd.Series:
    series = pd.Series([float(v) for v in values], dtype="float64")
    if series.empty:
        raise ValueError("percentile of an empty population")
    return series


def percentiles(values: Iterable[Number], fractions: Sequence[float]) -> List[float]:
    """Linear-interpolated percentiles, one per fraction."""
    cuts = _as_series(values).quantile(list(fractions), interpolation="linear")
    return [float(v) for v in cuts]


def percentile_cont(values: Iterable[Number], fraction: float) -> float:
    return percentiles(values, [fraction])[0]


def median(values: Iterable[Number]) -> float:
    return percentile_cont(values, 0.5)


def column_percentiles(frame: pd.DataFrame, fractions: Sequence[float]) -> Dict[str, List[float]]:
    """Percentiles of every column of ``frame`` from a single ``quantile`` call."""
    if frame.empty:
        raise ValueError("percentile of an empty population")
    cuts = frame.astype("float64").quantile(list(fractions), interpolation="linear")
    return {column: [float(v) for v in cuts[column]] for column in frame.columns}

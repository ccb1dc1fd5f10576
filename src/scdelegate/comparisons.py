# src/scdelegate/comparisons.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

import numpy as np

from .errors import ConfigurationError
from .logging_utils import log_verbose

LOGGER = logging.getLogger(__name__)

EACH_VS_REST = "each_vs_rest"
ALL_VS_ALL = "all_vs_all"
REST_LABEL = "rest"


@dataclass(frozen=True)
class Comparison:
    """
    One two-sided test: cells in group1 against cells in group2.

    Both sides are non-empty, disjoint tuples of group levels. label1/label2
    are what ends up in the result table (comma-joined levels, or 'rest').
    """
    group1: Tuple[str, ...]
    group2: Tuple[str, ...]
    label1: str
    label2: str

    @property
    def key(self) -> Tuple[str, str]:
        return self.label1, self.label2

    def __str__(self) -> str:
        return f"{self.label1} vs {self.label2}"


def _make_comparison(group1: Sequence[str], group2: Sequence[str], *, label2: str | None = None) -> Comparison:
    g1 = tuple(str(x) for x in group1)
    g2 = tuple(str(x) for x in group2)
    if not g1 or not g2:
        raise ConfigurationError("Both sides of a comparison need at least one group level.")
    overlap = sorted(set(g1) & set(g2))
    if overlap:
        raise ConfigurationError(
            f"Comparison sides must be disjoint; level(s) {overlap} appear on both sides."
        )
    return Comparison(
        group1=g1,
        group2=g2,
        label1=",".join(g1),
        label2=label2 if label2 is not None else ",".join(g2),
    )


def _check_levels(requested: Sequence[str], group_levels: Sequence[str]) -> None:
    valid = set(group_levels)
    missing = [x for x in dict.fromkeys(requested) if x not in valid]
    if missing:
        raise ConfigurationError(
            f"compare refers to unknown group level(s) {missing}; valid levels: {list(group_levels)}"
        )


def _is_scalar(x: Any) -> bool:
    return isinstance(x, (str, bytes, int, float, np.integer, np.floating))


def _as_side(x: Any) -> List[str]:
    if _is_scalar(x):
        return [str(x)]
    side = [str(v) for v in x]
    if not side:
        raise ConfigurationError("compare contains an empty side.")
    return side


def set_up_comparisons(
    group_levels: Sequence[str],
    compare: Any = EACH_VS_REST,
    compare_is_ref: bool = False,
    verbosity: int = 1,
) -> List[Comparison]:
    """
    Expand the compare argument into an ordered list of comparisons.

    compare may be
      - 'each_vs_rest': one comparison per level, level vs all other levels
      - 'all_vs_all': one comparison per pair of levels (i < j, level order)
      - a pair of levels, e.g. ('T-cells', 'B-cells')
      - a pair of level lists, e.g. (['cl1', 'cl5'], ['cl3'])
      - a single level with compare_is_ref=True: every other level vs that one

    Never returns an empty list; every failure raises ConfigurationError.
    """
    levels = [str(x) for x in group_levels]
    if len(set(levels)) != len(levels):
        raise ConfigurationError(f"group levels must be unique, got {levels}")
    if not levels:
        raise ConfigurationError("No group levels found; nothing to compare.")

    if compare is None:
        raise ConfigurationError("compare must not be None.")

    # ---- reference mode
    if compare_is_ref:
        if _is_scalar(compare):
            ref = str(compare)
        else:
            items = list(compare)
            if len(items) != 1 or not _is_scalar(items[0]):
                raise ConfigurationError(
                    "compare_is_ref=True requires compare to be a single group level, "
                    f"got {compare!r}."
                )
            ref = str(items[0])
        _check_levels([ref], levels)
        others = [lv for lv in levels if lv != ref]
        if not others:
            raise ConfigurationError(
                f"Reference level {ref!r} is the only group level; there is nothing to compare against it."
            )
        comparisons = [_make_comparison([lv], [ref]) for lv in others]

    # ---- keywords
    elif isinstance(compare, str) and compare == EACH_VS_REST:
        if len(levels) < 2:
            raise ConfigurationError(
                f"compare='{EACH_VS_REST}' needs at least two group levels, got {levels}."
            )
        comparisons = [
            _make_comparison([lv], [o for o in levels if o != lv], label2=REST_LABEL)
            for lv in levels
        ]

    elif isinstance(compare, str) and compare == ALL_VS_ALL:
        if len(levels) < 2:
            raise ConfigurationError(
                f"compare='{ALL_VS_ALL}' needs at least two group levels, got {levels}."
            )
        comparisons = [
            _make_comparison([levels[i]], [levels[j]])
            for i in range(len(levels))
            for j in range(i + 1, len(levels))
        ]

    # ---- explicit pair
    else:
        if _is_scalar(compare):
            raise ConfigurationError(
                f"compare={compare!r} is a single value; pass compare_is_ref=True to use it as "
                f"the reference level, or use '{EACH_VS_REST}' / '{ALL_VS_ALL}' / a pair of groups."
            )
        items = list(compare)
        if len(items) != 2:
            raise ConfigurationError(
                f"compare must have exactly two elements (one per side), got {len(items)}: {compare!r}"
            )
        side1 = _as_side(items[0])
        side2 = _as_side(items[1])
        _check_levels(side1 + side2, levels)
        comparisons = [_make_comparison(side1, side2)]

    log_verbose(LOGGER, verbosity, 2, "Planned %d comparison(s).", len(comparisons))
    return comparisons


def format_comparisons(comparisons: Sequence[Comparison]) -> str:
    lines = [f"{len(comparisons)} comparison(s):"]
    for i, cmp in enumerate(comparisons, start=1):
        lines.append(f"  {i}: {cmp.label1} vs {cmp.label2}")
    return "\n".join(lines)


def print_comparisons(comparisons: Sequence[Comparison], verbosity: int = 1) -> None:
    """Log the planned comparisons (verbosity >= 1)."""
    log_verbose(LOGGER, verbosity, 1, "%s", format_comparisons(comparisons))

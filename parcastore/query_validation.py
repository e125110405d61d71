"""Query request messages and their validation rules."""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Optional, Union

_Rule = Callable[[Any], Optional[str]]


class QueryValidationError(ValueError):
    """Raised when a query request is invalid.

    ``errors`` maps field names to their error messages; it is empty when the
    error is not about a single field.
    """

    def __init__(self, message: str, errors: dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.errors = dict(errors or {})


class QueryMode(enum.IntEnum):
    """How a query request selects profiles."""

    SINGLE_UNSPECIFIED = 0
    DIFF = 1
    MERGE = 2


class DiffSelectionMode(enum.IntEnum):
    """How one side of a diff selects profiles."""

    SINGLE_UNSPECIFIED = 0
    MERGE = 1


class ReportType(enum.IntEnum):
    """The kind of report a query produces."""

    FLAMEGRAPH_UNSPECIFIED = 0
    PPROF = 1
    TOP = 2
    CALLGRAPH = 3


def _required(value: Any) -> str | None:
    if value is None or value == "":
        return "cannot be blank"
    return None


def _enum_rule(enum_cls: type[enum.IntEnum], type_msg: str, invalid_msg: str) -> _Rule:
    def rule(value: Any) -> str | None:
        if isinstance(value, bool) or not isinstance(value, int):
            return type_msg
        try:
            enum_cls(value)
        except ValueError:
            return invalid_msg
        return None

    return rule


def _is_after(start: datetime | None) -> _Rule:
    def rule(end: Any) -> str | None:
        if not isinstance(end, datetime):
            return "end is not a timestamp"
        if start is not None and start > end:
            return "start timestamp must be before end"
        return None

    return rule


def _validate_fields(fields: list[tuple[str, Any, list[_Rule]]]) -> None:
    errors: dict[str, str] = {}
    for name, value, rules in fields:
        for rule in rules:
            message = rule(value)
            if message is not None:
                errors[name] = message
                break
    if errors:
        text = "; ".join(f"{name}: {msg}" for name, msg in sorted(errors.items()))
        raise QueryValidationError(text, errors)


@dataclass
class SingleProfile:
    """A single profile at a point in time."""

    time: datetime | None = None
    query: str = ""

    def validate(self) -> None:
        """Raise :class:`QueryValidationError` if the selection is invalid."""
        _validate_fields(
            [
                ("time", self.time, [_required]),
                ("query", self.query, [_required]),
            ]
        )


@dataclass
class MergeProfile:
    """All profiles matching a query within a time range, merged."""

    query: str = ""
    start: datetime | None = None
    end: datetime | None = None

    def validate(self) -> None:
        """Raise :class:`QueryValidationError` if the selection is invalid."""
        _validate_fields(
            [
                ("start", self.start, [_required]),
                ("end", self.end, [_required, _is_after(self.start)]),
                ("query", self.query, [_required]),
            ]
        )


def _validate_single(single: Any) -> None:
    if not isinstance(single, SingleProfile):
        raise QueryValidationError("single must not be unset")
    single.validate()


def _validate_merge(merge: Any) -> None:
    if not isinstance(merge, MergeProfile):
        raise QueryValidationError("merge must not be unset")
    merge.validate()


_DIFF_SELECTION_OPTIONS = {
    DiffSelectionMode.SINGLE_UNSPECIFIED: SingleProfile,
    DiffSelectionMode.MERGE: MergeProfile,
}


def _diff_selection_option_matches(mode: Any) -> _Rule:
    def rule(option: Any) -> str | None:
        if not isinstance(option, (SingleProfile, MergeProfile)):
            return "profile diff selection option is not a profile diff selection option"
        try:
            expected = _DIFF_SELECTION_OPTIONS[DiffSelectionMode(mode)]
        except (ValueError, TypeError):
            return "invalid profile diff selection mode"
        if not isinstance(option, expected):
            return "invalid option for mode"
        return None

    return rule


@dataclass
class ProfileDiffSelection:
    """One side of a diff: either a single profile or a merge."""

    mode: DiffSelectionMode = DiffSelectionMode.SINGLE_UNSPECIFIED
    options: Union[SingleProfile, MergeProfile, None] = None

    def validate(self) -> None:
        """Raise :class:`QueryValidationError` if the selection is invalid."""
        _validate_fields(
            [
                (
                    "mode",
                    self.mode,
                    [
                        _enum_rule(
                            DiffSelectionMode,
                            "mode is not a profile diff selection mode",
                            "invalid diff selection mode",
                        )
                    ],
                ),
                (
                    "options",
                    self.options,
                    [_required, _diff_selection_option_matches(self.mode)],
                ),
            ]
        )
        mode = DiffSelectionMode(self.mode)
        if mode is DiffSelectionMode.SINGLE_UNSPECIFIED:
            _validate_single(self.options)
        elif mode is DiffSelectionMode.MERGE:
            _validate_merge(self.options)
        else:
            raise QueryValidationError("invalid mode")


@dataclass
class DiffProfile:
    """A comparison of two profile selections."""

    a: ProfileDiffSelection | None = None
    b: ProfileDiffSelection | None = None

    def validate(self) -> None:
        """Raise :class:`QueryValidationError` if the diff is invalid."""
        _validate_fields(
            [
                ("a", self.a, [_required]),
                ("b", self.b, [_required]),
            ]
        )
        self.a.validate()
        self.b.validate()


def _validate_diff(diff: Any) -> None:
    if not isinstance(diff, DiffProfile):
        raise QueryValidationError("diff must not be unset")
    diff.validate()


@dataclass
class QueryRangeRequest:
    """A request for profiles matching a query within a time range."""

    query: str = ""
    start: datetime | None = None
    end: datetime | None = None
    limit: int = 0

    def validate(self) -> None:
        """Raise :class:`QueryValidationError` if the request is invalid."""
        _validate_fields(
            [
                ("start", self.start, [_required]),
                ("end", self.end, [_required, _is_after(self.start)]),
                ("query", self.query, [_required]),
            ]
        )


_QUERY_OPTIONS = {
    QueryMode.SINGLE_UNSPECIFIED: SingleProfile,
    QueryMode.DIFF: DiffProfile,
    QueryMode.MERGE: MergeProfile,
}


def _query_option_matches(mode: Any) -> _Rule:
    def rule(option: Any) -> str | None:
        if not isinstance(option, (SingleProfile, DiffProfile, MergeProfile)):
            return "query request option is not a query request option"
        try:
            expected = _QUERY_OPTIONS[QueryMode(mode)]
        except (ValueError, TypeError):
            return "invalid query request mode"
        if not isinstance(option, expected):
            return "invalid option for mode"
        return None

    return rule


@dataclass
class QueryRequest:
    """A request for a report over a single, merged or diffed profile."""

    mode: QueryMode = QueryMode.SINGLE_UNSPECIFIED
    options: Union[SingleProfile, DiffProfile, MergeProfile, None] = None
    report_type: ReportType = ReportType.FLAMEGRAPH_UNSPECIFIED

    def validate(self) -> None:
        """Raise :class:`QueryValidationError` if the request is invalid."""
        _validate_fields(
            [
                (
                    "mode",
                    self.mode,
                    [
                        _enum_rule(
                            QueryMode,
                            "mode is not a query request mode",
                            "invalid query request mode",
                        )
                    ],
                ),
                ("options", self.options, [_required, _query_option_matches(self.mode)]),
                (
                    "report_type",
                    self.report_type,
                    [
                        _enum_rule(
                            ReportType,
                            "report type is not a report type",
                            "invalid report type",
                        )
                    ],
                ),
            ]
        )
        mode = QueryMode(self.mode)
        if mode is QueryMode.SINGLE_UNSPECIFIED:
            _validate_single(self.options)
        elif mode is QueryMode.DIFF:
            _validate_diff(self.options)
        elif mode is QueryMode.MERGE:
            _validate_merge(self.options)
        else:
            raise QueryValidationError("invalid mode")
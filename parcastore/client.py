"""A metastore client that calls a metastore in the same process."""

from __future__ import annotations

from parcastore.kv import Function, Location, Mapping, Stacktrace
from parcastore.metastore import Metastore, UnsymbolizedLocations


class InProcessClient:
    """Client interface to a :class:`Metastore` without any transport in between."""

    def __init__(self, metastore: Metastore) -> None:
        self._metastore = metastore

    def get_or_create_mappings(self, mappings: list[Mapping]) -> list[Mapping]:
        """Return stored mappings, creating any that are new."""
        return self._metastore.get_or_create_mappings(mappings)

    def get_or_create_functions(self, functions: list[Function]) -> list[Function]:
        """Return stored functions, creating any that are new."""
        return self._metastore.get_or_create_functions(functions)

    def get_or_create_locations(self, locations: list[Location]) -> list[Location]:
        """Return stored locations, creating any that are new."""
        return self._metastore.get_or_create_locations(locations)

    def get_or_create_stacktraces(
        self, stacktraces: list[Stacktrace]
    ) -> list[Stacktrace]:
        """Return stored stacktraces, creating any that are new."""
        return self._metastore.get_or_create_stacktraces(stacktraces)

    def unsymbolized_locations(
        self, limit: int = 0, min_key: str = ""
    ) -> UnsymbolizedLocations:
        """Return a page of locations that still need symbolization."""
        return self._metastore.unsymbolized_locations(limit, min_key)

    def create_location_lines(self, locations: list[Location]) -> None:
        """Store symbolized locations."""
        self._metastore.create_location_lines(locations)

    def locations(self, location_ids: list[str]) -> list[Location]:
        """Return the locations with the given ids."""
        return self._metastore.locations(location_ids)

    def functions(self, function_ids: list[str]) -> list[Function]:
        """Return the functions with the given ids."""
        return self._metastore.functions(function_ids)

    def mappings(self, mapping_ids: list[str]) -> list[Mapping]:
        """Return the mappings with the given ids."""
        return self._metastore.mappings(mapping_ids)

    def stacktraces(self, stacktrace_ids: list[str]) -> list[Stacktrace]:
        """Return the stacktraces with the given ids."""
        return self._metastore.stacktraces(stacktrace_ids)
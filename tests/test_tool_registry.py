"""Tests for :mod:`toolchat.ai.tools.registry`."""

from __future__ import annotations

import itertools

import pytest

from toolchat.ai.tools.registry import DuplicateToolError, ToolRegistry
from toolchat.ai.tools.types import Capability

from tests.helpers import make_capability


def _registry(enabled=None) -> ToolRegistry:
    return ToolRegistry(
        [make_capability("getWeather"), make_capability("getTime"), make_capability("memory")],
        enabled=enabled,
    )


def _names(capabilities: tuple[Capability, ...]) -> list[str]:
    return [capability.name for capability in capabilities]


class TestConstruction:
    def test_list_known_preserves_declaration_order(self) -> None:
        registry = _registry()
        assert _names(registry.list_known()) == ["getWeather", "getTime", "memory"]
        assert len(registry) == 3

    def test_every_tool_enabled_by_default(self) -> None:
        registry = _registry()
        assert all(registry.is_enabled(name) for name in ("getWeather", "getTime", "memory"))

    def test_initial_enabled_subset(self) -> None:
        registry = _registry(enabled={"memory"})
        assert _names(registry.active_subset()) == ["memory"]
        assert not registry.is_enabled("getTime")

    def test_duplicate_names_rejected(self) -> None:
        with pytest.raises(DuplicateToolError):
            ToolRegistry([make_capability("getTime"), make_capability("getTime")])

    def test_capability_requires_coroutine_handler(self) -> None:
        with pytest.raises(TypeError):
            Capability(name="sync", description="not async", handler=lambda arguments: "x")  # type: ignore[arg-type]


class TestToggle:
    def test_toggle_flips_membership(self) -> None:
        registry = _registry()
        assert registry.toggle("getTime") is False
        assert not registry.is_enabled("getTime")
        assert registry.toggle("getTime") is True
        assert registry.is_enabled("getTime")

    def test_active_subset_keeps_declaration_order_after_toggles(self) -> None:
        registry = _registry(enabled=set())
        registry.toggle("memory")
        registry.toggle("getWeather")
        assert _names(registry.active_subset()) == ["getWeather", "memory"]

    def test_unknown_name_only_changes_membership(self) -> None:
        registry = _registry()
        before = registry.active_subset()
        assert registry.toggle("search") is True
        assert registry.is_enabled("search")
        assert registry.active_subset() == before
        assert "search" not in registry
        assert registry.describe("search") == "Unknown tool"

    def test_active_subset_equals_known_intersect_enabled(self) -> None:
        names = ["getWeather", "getTime", "memory", "ghost"]
        registry = _registry()
        known = {capability.name for capability in registry.list_known()}
        enabled = set(known)
        for name in itertools.islice(itertools.cycle(names), 0, 41, 3):
            registry.toggle(name)
            enabled ^= {name}
            expected = [candidate for candidate in names[:3] if candidate in known & enabled]
            assert _names(registry.active_subset()) == expected

    def test_set_enabled_replaces_state(self) -> None:
        registry = _registry()
        registry.set_enabled(["getTime"])
        assert registry.enabled_names() == ("getTime",)


class TestLookup:
    def test_get_and_describe_known_tool(self) -> None:
        registry = _registry()
        assert registry.get("memory") is not None
        assert registry.describe("memory") == "memory capability"

    def test_get_unknown_returns_none(self) -> None:
        assert _registry().get("nope") is None

# tests/automation/test_effects.py
import pytest

from automation.effects import apply_update, clamp_score, render_placeholders
from automation.exceptions import ActionFailure


class TestRenderPlaceholders:
    """Test render_placeholders() function."""

    def test_fills_known_fields(self):
        assert render_placeholders("Hi {{ name }}, {{company.name}}", {"name": "Ada", "company": {"name": "Acme"}}) == (
            "Hi Ada, Acme"
        )

    def test_unknown_placeholder_renders_empty(self):
        assert render_placeholders("Value: {{missing}}!", {}) == "Value: !"

    def test_lists_are_joined(self):
        assert render_placeholders("{{tags}}", {"tags": ["a", "b"]}) == "a, b"

    def test_none_passthrough(self):
        assert render_placeholders(None, {}) is None


class TestClampScore:
    """Test clamp_score() function."""

    def test_bounds(self):
        assert clamp_score(-5) == 0
        assert clamp_score(150) == 100
        assert clamp_score(42.4) == 42


class TestApplyUpdate:
    """Test apply_update() function."""

    def test_missing_entity(self, memory_store):
        with pytest.raises(ActionFailure):
            apply_update(memory_store, "t1", "nobody", "tag", tag="x")

    def test_score_floor(self, memory_store):
        memory_store.add_entity("t1", "c1", score=3)
        result = apply_update(memory_store, "t1", "c1", "score", delta=-10)
        assert result == {"previous_score": 3, "score": 0, "delta": -10}

    def test_tag_is_trimmed(self, memory_store):
        memory_store.add_entity("t1", "c1")
        result = apply_update(memory_store, "t1", "c1", "tag", tag="  vip ")
        assert result == {"tag": "vip", "added": True}

    def test_unknown_update_type(self, memory_store):
        memory_store.add_entity("t1", "c1")
        with pytest.raises(ActionFailure):
            apply_update(memory_store, "t1", "c1", "rename")

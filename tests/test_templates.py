"""
test_templates.py — Template rendering and the template service.

Covers:
    • {{variable}} substitution (whitespace, unknown keys, literal values)
    • Translations
    • Variable extraction and validation
    • Template CRUD, listing, pagination and broadcasts
    • Applying a template into a draft alert

Run with:
    pytest tests/test_templates.py -v
"""

from __future__ import annotations

import pytest

from backend.app.alerts.models import AlertChannel, AlertStatus, NotificationTemplate, Severity
from backend.app.alerts.templates import extract_variables, render, validate_variables
from backend.app.core.errors import InvalidStateError, TemplateNotFound, ValidationError


def _make_template(
    title: str = "{{county}} Alert",
    content: str = "Evacuate {{county}} now",
    **kwargs,
) -> NotificationTemplate:
    return NotificationTemplate(
        name=kwargs.pop("name", "evacuation"),
        type=kwargs.pop("type", "alert"),
        category=kwargs.pop("category", "weather"),
        title=title,
        content=content,
        created_by=1,
        **kwargs,
    )


def _template_data(name: str = "flood-warning", **overrides) -> dict:
    data = {
        "name": name,
        "type": "alert",
        "category": "weather",
        "title": "{{county}} Alert",
        "content": "Evacuate {{county}} by {{time}}",
        "channels": ["email", "sms"],
        "severity": "high",
    }
    data.update(overrides)
    return data


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Rendering
# ═══════════════════════════════════════════════════════════════════════════

class TestRender:
    """Test render()."""

    def test_riverside_scenario(self):
        title, content = render(_make_template(), {"county": "Riverside"})
        assert title == "Riverside Alert"
        assert content == "Evacuate Riverside now"

    def test_inner_whitespace_tolerated(self):
        template = _make_template(title="{{ county }} Alert", content="Evacuate {{county  }} now")
        assert render(template, {"county": "Riverside"}) == ("Riverside Alert", "Evacuate Riverside now")

    def test_unsupplied_placeholder_left_as_is(self):
        template = _make_template(content="Evacuate {{county}} by {{time}}")
        _, content = render(template, {"county": "Riverside"})
        assert content == "Evacuate Riverside by {{time}}"

    def test_extra_variables_do_not_change_output(self):
        template = _make_template()
        without = render(template, {"county": "Riverside"})
        with_extra = render(template, {"county": "Riverside", "shelter": "High School", "level": 3})
        assert with_extra == without

    def test_keys_are_case_sensitive(self):
        template = _make_template(title="{{County}} Alert")
        title, _ = render(template, {"county": "Riverside"})
        assert title == "{{County}} Alert"

    def test_values_inserted_literally(self):
        template = _make_template(content="Path {{path}}")
        _, content = render(template, {"path": r"C:\shelters\1 $& \g<0>"})
        assert content == r"Path C:\shelters\1 $& \g<0>"

    def test_non_string_values_stringified(self):
        template = _make_template(content="Level {{level}}")
        assert render(template, {"level": 3})[1] == "Level 3"

    def test_no_variables_returns_raw_text(self):
        assert render(_make_template()) == ("{{county}} Alert", "Evacuate {{county}} now")

    def test_inserted_values_not_rescanned(self):
        template = _make_template(title="{{a}}", content="Go to {{a}}")
        alone = render(template, {"a": "{{b}}"})
        assert alone == ("{{b}}", "Go to {{b}}")
        assert render(template, {"a": "{{b}}", "b": "INJECTED"}) == alone

    def test_later_key_cannot_rewrite_earlier_value(self):
        template = _make_template(title="{{b}} / {{a}}", content="")
        title, _ = render(template, {"a": "{{ b }}", "b": "Shelter 4"})
        assert title == "Shelter 4 / {{ b }}"


class TestTranslations:
    """Test language selection."""

    def test_translation_used_for_language(self):
        template = _make_template(translations={
            "es": {"title": "Alerta {{county}}", "content": "Evacuar {{county}} ahora"},
        })
        title, content = render(template, {"county": "Riverside"}, language="es")
        assert title == "Alerta Riverside"
        assert content == "Evacuar Riverside ahora"

    def test_missing_language_falls_back(self):
        template = _make_template(translations={"es": {"title": "Alerta {{county}}"}})
        assert render(template, {"county": "Riverside"}, language="fr") == (
            "Riverside Alert", "Evacuate Riverside now",
        )

    def test_partial_translation_falls_back_per_field(self):
        template = _make_template(translations={"es": {"title": "Alerta {{county}}"}})
        title, content = render(template, {"county": "Riverside"}, language="es")
        assert title == "Alerta Riverside"
        assert content == "Evacuate Riverside now"


class TestVariables:
    """Test extract_variables / validate_variables."""

    def test_extract_in_first_seen_order(self):
        assert extract_variables("{{b}} then {{ a }} then {{b}}") == ["b", "a"]

    def test_extract_empty(self):
        assert extract_variables("") == []

    def test_validate_reports_missing(self):
        template = _make_template(content="Evacuate {{county}} by {{time}}")
        result = validate_variables(template, {"county": "Riverside"})
        assert result["is_valid"] is False
        assert result["missing_variables"] == ["time"]
        assert result["required_variables"] == ["county", "time"]

    def test_validate_all_supplied(self):
        result = validate_variables(_make_template(), {"county": "Riverside"})
        assert result["is_valid"] is True
        assert result["missing_variables"] == []


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Template service
# ═══════════════════════════════════════════════════════════════════════════

class TestTemplateCrud:
    """Test TemplateService create/get/update/delete."""

    async def test_create_extracts_variables(self, services):
        template = await services.templates.create(_template_data(), actor_id=2)
        assert template.id is not None
        assert template.variables == ["county", "time"]
        assert template.channels == [AlertChannel.EMAIL, AlertChannel.SMS]
        assert template.severity is Severity.HIGH

    async def test_explicit_variables_kept(self, services):
        template = await services.templates.create(_template_data(variables=["county"]), actor_id=2)
        assert template.variables == ["county"]

    async def test_create_broadcasts_to_staff(self, services, publisher):
        template = await services.templates.create(_template_data(), actor_id=2)
        await services.broadcaster.drain()
        events = publisher.named("templateCreated")
        assert {room for _, room in events} == {"admin", "operator"}
        payload = events[0][0]
        assert payload == {"id": template.id, "name": "flood-warning", "type": "alert", "category": "weather"}

    async def test_missing_fields_rejected(self, services):
        with pytest.raises(ValidationError) as exc:
            await services.templates.create({"name": "x"}, actor_id=2)
        assert {"type", "category", "title", "content"} <= set(exc.value.errors)

    async def test_unknown_field_rejected(self, services):
        with pytest.raises(ValidationError) as exc:
            await services.templates.create(_template_data(owner="bob"), actor_id=2)
        assert "owner" in exc.value.errors

    async def test_invalid_channel_rejected(self, services):
        with pytest.raises(ValidationError) as exc:
            await services.templates.create(_template_data(channels=["fax"]), actor_id=2)
        assert exc.value.errors["channels"] == "Invalid channel: fax"

    async def test_duplicate_name_rejected(self, services):
        await services.templates.create(_template_data(), actor_id=2)
        with pytest.raises(ValidationError) as exc:
            await services.templates.create(_template_data(), actor_id=2)
        assert "name" in exc.value.errors

    async def test_get_missing(self, services):
        with pytest.raises(TemplateNotFound):
            await services.templates.get(404)

    async def test_update_content_reextracts_variables(self, services, publisher):
        template = await services.templates.create(_template_data(), actor_id=2)
        updated = await services.templates.update(
            template.id, {"content": "Shelter at {{shelter}}"}, actor_id=2,
        )
        assert updated.variables == ["shelter", "county"]
        await services.broadcaster.drain()
        assert len(publisher.named("templateUpdated")) == 2

    async def test_update_to_taken_name_rejected(self, services):
        await services.templates.create(_template_data("a"), actor_id=2)
        second = await services.templates.create(_template_data("b"), actor_id=2)
        with pytest.raises(ValidationError):
            await services.templates.update(second.id, {"name": "a"}, actor_id=2)

    async def test_delete_broadcasts_id_and_name(self, services, publisher):
        template = await services.templates.create(_template_data(), actor_id=2)
        await services.templates.delete(template.id)
        await services.broadcaster.drain()
        payload, _ = publisher.named("templateDeleted")[0]
        assert payload == {"id": template.id, "name": "flood-warning"}
        with pytest.raises(TemplateNotFound):
            await services.templates.get(template.id)


class TestTemplateListing:
    """Test listing, pagination and distinct queries."""

    async def _seed(self, services):
        for i, category in enumerate(["weather", "weather", "fire", "health", "weather"]):
            await services.templates.create(
                _template_data(f"tpl-{i}", category=category, content=f"{{{{v{i}}}}} body"),
                actor_id=2,
            )

    async def test_pagination(self, services):
        await self._seed(services)
        result = await services.templates.list(page=3, limit=2, sort_by="name", sort_dir="asc")
        assert [t.name for t in result["templates"]] == ["tpl-4"]
        assert result["pagination"] == {"total": 5, "page": 3, "limit": 2, "totalPages": 3}

    async def test_filter_by_category(self, services):
        await self._seed(services)
        result = await services.templates.list(category="weather")
        assert result["pagination"]["total"] == 3

    async def test_search_is_case_insensitive(self, services):
        await self._seed(services)
        result = await services.templates.list(search="TPL-1")
        assert [t.name for t in result["templates"]] == ["tpl-1"]

    async def test_invalid_sort_field(self, services):
        with pytest.raises(ValidationError):
            await services.templates.list(sort_by="password")

    async def test_categories_distinct_sorted(self, services):
        await self._seed(services)
        assert await services.templates.categories() == ["fire", "health", "weather"]

    async def test_variables_union_sorted(self, services):
        await self._seed(services)
        assert await services.templates.variables() == ["county", "v0", "v1", "v2", "v3", "v4"]

    async def test_find_default_skips_inactive(self, services):
        await services.templates.create(_template_data("off", is_active=False), actor_id=2)
        on = await services.templates.create(_template_data("on"), actor_id=2)
        found = await services.templates.find_default("alert", "weather")
        assert found.id == on.id
        assert await services.templates.find_default("alert", "fire") is None


class TestApplyTemplate:
    """Test TemplateService.apply."""

    async def test_apply_creates_draft(self, services, providers):
        template = await services.templates.create(_template_data(), actor_id=2)
        alert = await services.templates.apply(
            template.id, {"county": "Riverside", "time": "6pm"}, {"roles": ["subscriber"]}, actor_id=2,
        )
        assert alert.status is AlertStatus.DRAFT
        assert alert.title == "Riverside Alert"
        assert alert.message == "Evacuate Riverside by 6pm"
        assert alert.severity is Severity.HIGH
        assert alert.channels == [AlertChannel.EMAIL, AlertChannel.SMS]
        assert alert.from_template.template_id == template.id
        assert alert.delivery_stats.total == 0
        assert providers[AlertChannel.EMAIL].calls == []

    async def test_apply_defaults_to_everyone(self, services):
        template = await services.templates.create(_template_data(), actor_id=2)
        alert = await services.templates.apply(template.id, {"county": "X", "time": "now"}, None, actor_id=2)
        assert alert.targeting.all is True

    async def test_apply_with_language(self, services):
        template = await services.templates.create(
            _template_data(translations={"es": {"title": "Alerta {{county}}", "content": "Evacuar"}}),
            actor_id=2,
        )
        alert = await services.templates.apply(template.id, {"county": "Riverside"}, None, 2, language="es")
        assert alert.title == "Alerta Riverside"

    async def test_apply_inactive_rejected(self, services):
        template = await services.templates.create(_template_data(is_active=False), actor_id=2)
        with pytest.raises(InvalidStateError):
            await services.templates.apply(template.id, {}, None, actor_id=2)

    async def test_apply_missing_template(self, services):
        with pytest.raises(TemplateNotFound):
            await services.templates.apply(404, {}, None, actor_id=2)

    async def test_draft_can_then_be_sent(self, services, providers):
        template = await services.templates.create(_template_data(), actor_id=2)
        draft = await services.templates.apply(
            template.id, {"county": "Riverside", "time": "6pm"}, {"roles": ["subscriber"]}, actor_id=2,
        )
        sent = await services.lifecycle.send(draft.id, actor_id=2)
        assert sent.status is AlertStatus.SENT
        assert sorted(providers[AlertChannel.EMAIL].calls) == [3, 4, 5]
        assert providers[AlertChannel.SMS].calls == [4]

"""
templates.py — Template rendering and template management.

Placeholders use double braces with optional inner whitespace:

    "Flood warning for {{ area }}"  +  {"area": "Riverside"}
        → "Flood warning for Riverside"

Rules:
    • keys are matched literally and case-sensitively
    • placeholders without a supplied value stay as-is
    • unused variables are ignored
    • a non-English ``language`` swaps in the translated title/content
      (when present) before substitution

Applying a template creates a *draft* alert through the lifecycle
manager; nothing is dispatched until the draft is sent.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Tuple

from backend.app.alerts.broadcaster import RealtimeBroadcaster
from backend.app.alerts.models import (
    Alert,
    AlertChannel,
    AlertStatus,
    NotificationTemplate,
    Severity,
    TemplateUsage,
)
from backend.app.alerts.storage import Storage
from backend.app.core.errors import InvalidStateError, TemplateNotFound, ValidationError

logger = logging.getLogger(__name__)

_VARIABLE_RE = re.compile(r"\{\{\s*([A-Za-z0-9_]+)\s*\}\}")

TEMPLATE_NAME_MAX_LENGTH = 100

_SORTABLE = {"created_at", "updated_at", "name", "category", "type"}

_TEMPLATE_FIELDS = {
    "name", "description", "type", "category", "title", "content",
    "variables", "translations", "channels", "severity", "is_active",
}


# ═══════════════════════════════════════════════════════════════════════════
# Rendering
# ═══════════════════════════════════════════════════════════════════════════

_PLACEHOLDER_RE = re.compile(r"\{\{\s*(.+?)\s*\}\}")


def _substitute(text: str, variables: Mapping[str, Any]) -> str:
    # Single pass: inserted values are never rescanned for placeholders
    values = {str(key): str(value) for key, value in variables.items()}

    def _replace(match: re.Match) -> str:
        return values.get(match.group(1), match.group(0))

    return _PLACEHOLDER_RE.sub(_replace, text)


def render(
    template: NotificationTemplate,
    variables: Optional[Mapping[str, Any]] = None,
    language: str = "en",
) -> Tuple[str, str]:
    """Return the rendered ``(title, content)`` pair."""
    title, content = template.title, template.content

    if language != "en":
        translation = template.translations.get(language) or {}
        title = translation.get("title") or title
        content = translation.get("content") or content

    variables = variables or {}
    return _substitute(title, variables), _substitute(content, variables)


def extract_variables(text: str) -> List[str]:
    """Placeholder names in order of first appearance."""
    seen: List[str] = []
    for name in _VARIABLE_RE.findall(text or ""):
        if name not in seen:
            seen.append(name)
    return seen


def validate_variables(
    template: NotificationTemplate,
    variables: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Report which placeholders in the template have no supplied value."""
    variables = variables or {}
    required = extract_variables(template.content)
    for name in extract_variables(template.title):
        if name not in required:
            required.append(name)
    missing = [name for name in required if name not in variables]
    return {
        "is_valid": not missing,
        "missing_variables": missing,
        "required_variables": required,
    }


# ═══════════════════════════════════════════════════════════════════════════
# Validation helpers
# ═══════════════════════════════════════════════════════════════════════════

def _parse_channels(raw: Any, errors: Dict[str, str]) -> List[AlertChannel]:
    if not isinstance(raw, (list, tuple)) or not raw:
        errors["channels"] = "At least one channel is required"
        return []
    channels: List[AlertChannel] = []
    for value in raw:
        try:
            channel = AlertChannel(value)
        except ValueError:
            errors["channels"] = f"Invalid channel: {value}"
            return []
        if channel not in channels:
            channels.append(channel)
    return channels


def _parse_severity(raw: Any, errors: Dict[str, str]) -> Optional[Severity]:
    try:
        return Severity(raw)
    except ValueError:
        errors["severity"] = f"Invalid severity: {raw}"
        return None


# ═══════════════════════════════════════════════════════════════════════════
# Template Service
# ═══════════════════════════════════════════════════════════════════════════

class TemplateService:
    """CRUD, listing and application of notification templates."""

    def __init__(self, storage: Storage, broadcaster: RealtimeBroadcaster, lifecycle=None):
        self.storage = storage
        self.broadcaster = broadcaster
        # AlertLifecycleManager; only needed by apply()
        self.lifecycle = lifecycle

    async def _get_or_raise(self, template_id: int) -> NotificationTemplate:
        template = await self.storage.get_template(template_id)
        if template is None:
            raise TemplateNotFound(template_id)
        return template

    async def _check_name_free(self, name: str, exclude_id: Optional[int] = None) -> None:
        for existing in await self.storage.list_templates(search=name):
            if existing.name == name and existing.id != exclude_id:
                raise ValidationError("Template name already exists", field="name")

    def _validate(self, data: Mapping[str, Any], *, partial: bool = False) -> Dict[str, Any]:
        errors: Dict[str, str] = {}
        clean: Dict[str, Any] = {}

        unknown = set(data) - _TEMPLATE_FIELDS
        if unknown:
            raise ValidationError(
                "Unknown template fields",
                errors={name: "Field cannot be set" for name in sorted(unknown)},
            )

        for name in ("name", "type", "category", "title", "content"):
            if name not in data:
                if not partial:
                    errors[name] = f"{name.capitalize()} is required"
                continue
            value = data[name]
            if not isinstance(value, str) or not value.strip():
                errors[name] = f"{name.capitalize()} is required"
            else:
                clean[name] = value

        if "name" in clean and len(clean["name"]) > TEMPLATE_NAME_MAX_LENGTH:
            errors["name"] = f"Name must be {TEMPLATE_NAME_MAX_LENGTH} characters or less"

        if "channels" in data:
            clean["channels"] = _parse_channels(data["channels"], errors)
        if "severity" in data:
            clean["severity"] = _parse_severity(data["severity"], errors)

        if "variables" in data:
            variables = data["variables"]
            if not isinstance(variables, list) or not all(isinstance(v, str) for v in variables):
                errors["variables"] = "Variables must be a list of names"
            else:
                clean["variables"] = list(dict.fromkeys(variables))

        if "translations" in data:
            translations = data["translations"]
            if not isinstance(translations, dict) or not all(isinstance(v, dict) for v in translations.values()):
                errors["translations"] = "Translations must map language codes to {title, content}"
            else:
                clean["translations"] = {lang: dict(t) for lang, t in translations.items()}

        if "description" in data:
            clean["description"] = data["description"]
        if "is_active" in data:
            clean["is_active"] = bool(data["is_active"])

        if errors:
            raise ValidationError("Invalid template data", errors=errors)
        return clean

    # ── CRUD ──

    async def create(self, data: Mapping[str, Any], actor_id: int) -> NotificationTemplate:
        clean = self._validate(data)
        await self._check_name_free(clean["name"])

        variables = clean.pop("variables", None)
        if variables is None:
            variables = extract_variables(clean["title"])
            for name in extract_variables(clean["content"]):
                if name not in variables:
                    variables.append(name)

        template = NotificationTemplate(created_by=actor_id, variables=variables, **clean)
        template = await self.storage.insert_template(template)
        logger.info("Template %d created: %s", template.id, template.name, extra={"template_id": template.id})
        await self.broadcaster.template_changed("templateCreated", template)
        return template

    async def get(self, template_id: int) -> NotificationTemplate:
        return await self._get_or_raise(template_id)

    async def list(
        self,
        *,
        type: Optional[str] = None,
        category: Optional[str] = None,
        is_active: Optional[bool] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
        sort_by: str = "created_at",
        sort_dir: str = "desc",
    ) -> Dict[str, Any]:
        if sort_by not in _SORTABLE:
            raise ValidationError(f"Cannot sort by {sort_by}", field="sort_by")
        page = max(page, 1)
        limit = max(limit, 1)

        templates = await self.storage.list_templates(
            type=type, category=category, is_active=is_active, search=search,
        )
        templates.sort(key=lambda t: (getattr(t, sort_by), t.id), reverse=sort_dir.lower() == "desc")

        total = len(templates)
        start = (page - 1) * limit
        return {
            "templates": templates[start:start + limit],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "totalPages": math.ceil(total / limit),
            },
        }

    async def update(self, template_id: int, patch: Mapping[str, Any], actor_id: int) -> NotificationTemplate:
        template = await self._get_or_raise(template_id)
        clean = self._validate(patch, partial=True)
        if "name" in clean and clean["name"] != template.name:
            await self._check_name_free(clean["name"], exclude_id=template_id)

        for name, value in clean.items():
            setattr(template, name, value)
        if ("title" in clean or "content" in clean) and "variables" not in clean:
            template.variables = validate_variables(template)["required_variables"]
        template.updated_at = datetime.now(timezone.utc)

        template = await self.storage.save_template(template)
        logger.info("Template %d updated by %d", template_id, actor_id, extra={"template_id": template_id})
        await self.broadcaster.template_changed("templateUpdated", template)
        return template

    async def delete(self, template_id: int) -> NotificationTemplate:
        template = await self._get_or_raise(template_id)
        await self.storage.delete_template(template_id)
        logger.info("Template %d deleted", template_id, extra={"template_id": template_id})
        await self.broadcaster.template_changed("templateDeleted", template)
        return template

    # ── Queries ──

    async def categories(self) -> List[str]:
        return sorted({t.category for t in await self.storage.list_templates()})

    async def variables(self) -> List[str]:
        names = set()
        for template in await self.storage.list_templates():
            names.update(template.variables)
        return sorted(names)

    async def find_default(self, type: str, category: str) -> Optional[NotificationTemplate]:
        matches = await self.storage.list_templates(type=type, category=category, is_active=True)
        return matches[0] if matches else None

    # ── Apply ──

    async def apply(
        self,
        template_id: int,
        variables: Optional[Mapping[str, Any]],
        targeting: Optional[Mapping[str, Any]],
        actor_id: int,
        *,
        language: str = "en",
    ) -> Alert:
        """Render the template into a new draft alert."""
        template = await self._get_or_raise(template_id)
        if not template.is_active:
            raise InvalidStateError("Template is not active", template_id=template_id)

        title, message = render(template, variables, language)
        alert_data = {
            "title": title,
            "message": message,
            "severity": template.severity.value,
            "channels": [c.value for c in template.channels],
            "status": AlertStatus.DRAFT.value,
            "targeting": dict(targeting) if targeting else {"all": True},
        }
        return await self.lifecycle.create(
            alert_data,
            actor_id,
            from_template=TemplateUsage(template_id=template.id),
        )

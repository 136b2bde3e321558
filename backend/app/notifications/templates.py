"""
templates.py — Alert type → WhatsApp template resolution.

Resolution order:
    1. exact key            "Overspeed"       → overspeed_alert_ar
    2. normalised key       "Ignition-On"     → "ignition_on" → ignition_on_alert_en
    3. nothing              → None  (caller falls back to plain text or skips)

Language is read off the template code: codes ending in ``_en`` are sent
as English, everything else uses the configured default language.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional

from backend.app.core.config import TemplateEntry
from backend.app.notifications.models import TemplateResolution

logger = logging.getLogger(__name__)

ENGLISH_SUFFIX = "_en"


def normalize_alert_type(alert_type: str) -> str:
    """Lowercase and turn spaces/hyphens into underscores."""
    return alert_type.lower().replace(" ", "_").replace("-", "_")


class TemplateResolver:
    """Maps raw alert type strings onto provider template codes."""

    def __init__(
        self,
        mapping: Mapping[str, TemplateEntry],
        default_language: str = "ar",
    ):
        self._mapping: Dict[str, TemplateEntry] = dict(mapping)
        self._default_language = default_language

    def language_for(self, template_code: str) -> str:
        if template_code.endswith(ENGLISH_SUFFIX):
            return "en"
        return self._default_language

    def lookup(self, alert_type: str) -> Optional[TemplateEntry]:
        entry = self._mapping.get(alert_type)
        if entry is None:
            entry = self._mapping.get(normalize_alert_type(alert_type))
        return entry

    def resolve(self, alert_type: str) -> Optional[TemplateResolution]:
        entry = self.lookup(alert_type)
        if entry is None:
            logger.warning(
                "No template mapped for alert type '%s' (normalized '%s')",
                alert_type, normalize_alert_type(alert_type),
                extra={"alert_type": alert_type},
            )
            return None
        return TemplateResolution(
            template_code=entry.template,
            language=self.language_for(entry.template),
        )

    def english_templates(self) -> Dict[str, TemplateEntry]:
        return {
            alert_type: entry
            for alert_type, entry in self._mapping.items()
            if entry.template.endswith(ENGLISH_SUFFIX)
        }

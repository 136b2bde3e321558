"""
test_templates.py — Alert type → template resolution.

Covers:
    • Exact legacy keys win over normalised variants
    • Normalisation of spaces / hyphens / case
    • Language derivation from the template suffix
    • Unknown types resolve to None (never an empty template code)
    • Mapping overrides through Settings

Run with:
    pytest tests/test_templates.py -v
"""

from __future__ import annotations

from backend.app.core.config import (
    DEFAULT_ALERT_TEMPLATES,
    AlertPriority,
    Settings,
    TemplateEntry,
)
from backend.app.notifications.templates import TemplateResolver, normalize_alert_type


def _make_resolver(mapping=None, language: str = "ar") -> TemplateResolver:
    return TemplateResolver(mapping if mapping is not None else DEFAULT_ALERT_TEMPLATES, language)


# ═══════════════════════════════════════════════════════════════════════════
# Normalisation
# ═══════════════════════════════════════════════════════════════════════════

class TestNormalize:

    def test_spaces_and_case(self):
        assert normalize_alert_type("Geofence Out") == "geofence_out"

    def test_hyphens(self):
        assert normalize_alert_type("Ignition-On") == "ignition_on"

    def test_already_normal(self):
        assert normalize_alert_type("overspeed") == "overspeed"


# ═══════════════════════════════════════════════════════════════════════════
# Resolution
# ═══════════════════════════════════════════════════════════════════════════

class TestResolve:

    def test_exact_legacy_key(self):
        resolution = _make_resolver().resolve("Overspeed")
        assert resolution.template_code == "overspeed_alert_ar"
        assert resolution.language == "ar"

    def test_english_key(self):
        resolution = _make_resolver().resolve("overspeed")
        assert resolution.template_code == "overspeed_alert_en"
        assert resolution.language == "en"

    def test_exact_beats_normalised(self):
        mapping = {
            "Ignition-On": TemplateEntry(template="ignition_legacy_ar"),
            "ignition_on": TemplateEntry(template="ignition_on_alert_en"),
        }
        resolution = _make_resolver(mapping).resolve("Ignition-On")
        assert resolution.template_code == "ignition_legacy_ar"
        assert resolution.language == "ar"

    def test_normalised_fallback(self):
        resolution = _make_resolver().resolve("Ignition On")
        assert resolution.template_code == "ignition_on_alert_en"
        assert resolution.language == "en"

    def test_unknown_returns_none(self):
        assert _make_resolver().resolve("Harsh Braking") is None

    def test_empty_type_returns_none(self):
        assert _make_resolver().resolve("") is None

    def test_default_language_is_configurable(self):
        resolver = _make_resolver({"SOS": TemplateEntry(template="sos_alert")}, language="fr")
        assert resolver.resolve("SOS").language == "fr"

    def test_lookup_returns_priority(self):
        entry = _make_resolver().lookup("SOS")
        assert entry.priority == AlertPriority.CRITICAL


class TestEnglishTemplates:

    def test_only_en_suffix(self):
        english = _make_resolver().english_templates()
        assert set(english) == {"overspeed", "ignition_on", "ignition_off"}
        assert all(e.template.endswith("_en") for e in english.values())


# ═══════════════════════════════════════════════════════════════════════════
# Settings integration
# ═══════════════════════════════════════════════════════════════════════════

class TestSettingsMapping:

    def test_defaults_loaded(self, settings):
        assert settings.ALERT_TEMPLATES["Geofence Out"].template == "geofence_exit_ar"

    def test_override_from_plain_dict(self, make_settings):
        settings = make_settings(
            ALERT_TEMPLATES={"harsh_braking": {"template": "harsh_braking_en", "priority": "high"}},
        )
        entry = settings.ALERT_TEMPLATES["harsh_braking"]
        assert isinstance(entry, TemplateEntry)
        assert entry.priority == AlertPriority.HIGH

        resolver = TemplateResolver(settings.ALERT_TEMPLATES, settings.DEFAULT_LANGUAGE)
        assert resolver.resolve("Harsh Braking").template_code == "harsh_braking_en"
        assert resolver.resolve("Overspeed") is None

    def test_allowed_source_ips_parsed(self, make_settings):
        settings = make_settings(ALLOWED_SOURCE_IPS=" 10.0.0.1, 10.0.0.2 ,")
        assert settings.allowed_source_ips == ["10.0.0.1", "10.0.0.2"]

    def test_settings_type(self, settings):
        assert isinstance(settings, Settings)
        assert settings.DEFAULT_LANGUAGE == "ar"

import pytest
from pydantic import ValidationError

from forumai.models import (
    Charter,
    ModerationDecision,
    ModerationResult,
    Prompt,
    StringTranslated,
    TranslationComplete,
    TranslationProgress,
)


def make_charter(**overrides) -> Charter:
    fields = {
        "name": "Gardening",
        "purpose": "Share tips about home gardens",
        "rules": ("Be kind", "No spam"),
        "behaviors": ("Cite sources",),
    }
    fields.update(overrides)
    return Charter(**fields)


class TestCharter:
    def test_system_prompt_layout(self):
        prompt = make_charter().build_system_prompt()
        assert prompt == (
            "You are an assistant operating within the following community charter.\n"
            "Community Name: Gardening\n"
            "Purpose: Share tips about home gardens\n"
            "\n"
            "Rules:\n"
            "- Be kind\n"
            "- No spam\n"
            "\n"
            "Expected Behaviors:\n"
            "- Cite sources\n"
            "\n"
            "When evaluating or generating content, always apply the charter above. "
            "Be concise and actionable in responses."
        )

    def test_system_prompt_is_deterministic(self):
        charter = make_charter()
        assert charter.build_system_prompt() == charter.build_system_prompt()
        assert make_charter(id="other").build_system_prompt() == charter.build_system_prompt()

    def test_empty_sections_are_marked(self):
        prompt = make_charter(rules=(), behaviors=()).build_system_prompt()
        assert "Rules:\n(none specified)\n" in prompt
        assert "Expected Behaviors:\n(none specified)\n" in prompt

    def test_rule_order_is_preserved(self):
        prompt = make_charter(rules=("Second", "First")).build_system_prompt()
        assert prompt.index("- Second") < prompt.index("- First")

    def test_name_is_required(self):
        with pytest.raises(ValidationError):
            Charter(name="")

    def test_charter_is_immutable(self):
        charter = make_charter()
        with pytest.raises(ValidationError):
            charter.name = "Other"


class TestPrompt:
    def test_single_text_rendering(self):
        prompt = Prompt(system="SYS", user="hi")
        assert prompt.text == "SYS\n\nUser:\nhi\n\nAssistant:"


class TestModerationResult:
    def test_defaults(self):
        result = ModerationResult(decision=ModerationDecision.ALLOW)
        assert result.summary == ""
        assert result.violations == []


class TestProgressEvents:
    def test_percentage(self):
        event = TranslationProgress(job_id="j", total=4, completed=1, current_key="a")
        assert event.percentage == 25.0

    def test_percentage_zero_total(self):
        event = TranslationProgress(job_id="j", total=0, completed=0)
        assert event.percentage == 0.0

    def test_completed_cannot_exceed_total(self):
        with pytest.raises(ValidationError):
            TranslationProgress(job_id="j", total=1, completed=2)

    def test_payload_uses_camel_case(self):
        event = TranslationProgress(job_id="j", total=2, completed=2, current_key="b")
        assert event.event_name == "TranslationProgress"
        assert event.payload() == {
            "jobId": "j",
            "total": 2,
            "completed": 2,
            "currentKey": "b",
            "percentage": 100.0,
        }

    def test_string_translated_payload(self):
        event = StringTranslated(key="greeting", language_code="fr", translated_text="Bonjour")
        assert event.event_name == "StringTranslated"
        assert event.payload() == {
            "key": "greeting",
            "languageCode": "fr",
            "translatedText": "Bonjour",
        }

    def test_complete_payload(self):
        event = TranslationComplete(job_id="j", translated_count=3)
        assert event.payload() == {"jobId": "j", "translatedCount": 3}

"""Tests for free-text intent classification."""

import pytest

from src.bot.intent import IntentKind, classify, extract_request_title, strip_filler


class TestHealthIntent:
    @pytest.mark.parametrize(
        "text",
        [
            "are my services running?",
            "Is everything running ok",
            "check the services",
            "is radarr working",
            "status of sonarr",
            "can I get the services running",
        ],
    )
    def test_health_queries(self, text):
        assert classify(text).kind == IntentKind.HEALTH


class TestRequestIntent:
    @pytest.mark.parametrize(
        ("text", "title"),
        [
            ("I want to watch Dune", "Dune"),
            ("can you get The Bear please", "The Bear"),
            ("I'd like to watch Severance!", "Severance"),
            ("add Oppenheimer for me", "Oppenheimer"),
            ("looking for Blade Runner 2049", "Blade Runner 2049"),
            ("request Alien thanks", "Alien"),
        ],
    )
    def test_request_titles(self, text, title):
        intent = classify(text)

        assert intent.kind == IntentKind.REQUEST
        assert intent.title == title

    def test_empty_title_is_not_a_request(self):
        assert extract_request_title("I want to watch please") is None

    def test_first_matching_rule_decides(self):
        # "I want to see" matches before "looking for" and leaves only filler
        assert extract_request_title("looking for Dune, I want to see please") is None
        assert classify("looking for Dune, I want to see please").kind == IntentKind.NONE


class TestNoIntent:
    @pytest.mark.parametrize("text", ["", "   ", "hello there", "thanks!"])
    def test_unclassified(self, text):
        intent = classify(text)

        assert intent.kind == IntentKind.NONE
        assert intent.title is None


class TestStripFiller:
    def test_strips_repeated_filler(self):
        assert strip_filler("Dune please thanks!!") == "Dune"

    def test_keeps_title_words(self):
        assert strip_filler("Thanksgiving") == "Thanksgiving"

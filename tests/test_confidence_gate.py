"""Tests for confidence gating of AI answers."""

import pytest

from sitebot.chat import AnswerSource, aggregate_confidence, apply_gate, evaluate
from sitebot.chat.confidence_gate import (
    CLARIFY_MESSAGE,
    ESCALATE_MESSAGE,
    REFUSE_MESSAGE,
    SOFT_ANSWER_PREFIX,
)
from sitebot.db.models import ConfidencePolicy
from sitebot.db.stores import ConfidencePolicyStore

ANSWER = "Our plans start at $49 per month."


def make_policy(min_confidence=0.65, min_sources=1, action="SOFT_ANSWER") -> ConfidencePolicy:
    return ConfidencePolicy(
        connection_id="conn-1",
        min_answer_confidence=min_confidence,
        min_source_count=min_sources,
        low_confidence_action=action,
    )


class TestAggregate:
    def test_mean_of_sources(self):
        sources = [AnswerSource("a", 0.4), AnswerSource("b", 0.8)]
        assert aggregate_confidence(sources) == pytest.approx(0.6)

    def test_no_sources_is_full_confidence(self):
        assert aggregate_confidence([]) == 1.0


class TestEvaluate:
    def test_low_confidence_is_gated(self):
        decision = evaluate(0.5, 1, make_policy())

        assert decision.gated
        assert "confidence 0.50 below minimum 0.65" in decision.reason

    def test_confident_single_source_passes(self):
        assert not evaluate(0.8, 1, make_policy()).gated

    def test_exact_threshold_passes(self):
        assert not evaluate(0.65, 1, make_policy()).gated

    def test_zero_sources_allowed_when_minimum_is_zero(self):
        assert not evaluate(0.9, 0, make_policy(min_sources=0)).gated

    def test_zero_sources_gated_when_minimum_is_one(self):
        decision = evaluate(0.9, 0, make_policy(min_sources=1))

        assert decision.gated
        assert "0 source(s) below minimum 1" in decision.reason


class TestActions:
    @pytest.mark.parametrize(
        "action,expected",
        [
            ("REFUSE", REFUSE_MESSAGE),
            ("CLARIFY", CLARIFY_MESSAGE),
            ("ESCALATE", ESCALATE_MESSAGE),
            ("SOFT_ANSWER", SOFT_ANSWER_PREFIX + ANSWER),
        ],
    )
    def test_replacement_text(self, action, expected):
        reply = apply_gate(ANSWER, [AnswerSource("a", 0.3)], make_policy(action=action))

        assert reply.text == expected
        assert reply.metadata["gated"] is True
        assert reply.metadata["originalAnswer"] == ANSWER
        assert reply.metadata["lowConfidenceAction"] == action

    def test_unknown_action_falls_back_to_soft_answer(self):
        reply = apply_gate(ANSWER, [AnswerSource("a", 0.3)], make_policy(action="SHRUG"))

        assert reply.text == SOFT_ANSWER_PREFIX + ANSWER
        assert reply.metadata["lowConfidenceAction"] == "SOFT_ANSWER"


class TestApplyGate:
    def test_passing_answer_untouched(self):
        sources = [AnswerSource("a", 0.9), AnswerSource("b", 0.7)]

        reply = apply_gate(ANSWER, sources, make_policy())

        assert reply.text == ANSWER
        assert reply.metadata["gated"] is False
        assert reply.metadata["confidenceScore"] == 0.8
        assert reply.metadata["sources"] == [
            {"sourceId": "a", "confidenceScore": 0.9},
            {"sourceId": "b", "confidenceScore": 0.7},
        ]
        assert "originalAnswer" not in reply.metadata

    def test_duplicate_sources_count_once(self):
        sources = [AnswerSource("a", 0.9), AnswerSource("a", 0.9)]

        reply = apply_gate(ANSWER, sources, make_policy(min_sources=2))

        assert reply.metadata["gated"] is True


class TestPolicyStore:
    @pytest.mark.asyncio
    async def test_default_policy(self, test_db_session, make_connection):
        conn = await make_connection()

        policy = await ConfidencePolicyStore(test_db_session).find_or_default(conn.connection_id)

        assert policy.min_answer_confidence == 0.65
        assert policy.min_source_count == 1
        assert policy.low_confidence_action == "SOFT_ANSWER"

    @pytest.mark.asyncio
    async def test_upsert_keeps_unset_fields(self, test_db_session, make_connection):
        conn = await make_connection()
        store = ConfidencePolicyStore(test_db_session)

        await store.upsert(conn.connection_id, low_confidence_action="ESCALATE")
        policy = await store.upsert(conn.connection_id, min_answer_confidence=0.8)

        assert policy.low_confidence_action == "ESCALATE"
        assert policy.min_answer_confidence == 0.8
        assert policy.min_source_count == 1

"""
Tests für shellgate.models.

Testet:
  - IDs und Token-Schätzung
  - Kostenberechnung
  - Konsistenz von ValidationOutcome
  - Immutability (frozen Modelle sind nicht änderbar)
"""

from __future__ import annotations

import re

import pytest
from pydantic import ValidationError

from shellgate.models import (
    ChatMessage,
    ConversationMessage,
    ExecutionResult,
    MessageRole,
    ModelCost,
    ModelSpec,
    SafetyLevel,
    ValidationOutcome,
    calculate_cost,
    estimate_tokens,
    new_id,
)


class TestHelpers:
    def test_new_id_format(self) -> None:
        assert re.fullmatch(r"conv-\d{13}-[0-9a-f]{9}", new_id("conv"))

    def test_new_id_unique(self) -> None:
        assert len({new_id("x") for _ in range(100)}) == 100

    @pytest.mark.parametrize(("text", "tokens"), [("", 0), ("a", 1), ("abcd", 1), ("abcde", 2)])
    def test_estimate_tokens(self, text: str, tokens: int) -> None:
        assert estimate_tokens(text) == tokens

    def test_calculate_cost(self) -> None:
        spec = ModelSpec(id="gpt-4o", cost=ModelCost(input=2.5, output=10.0))
        assert calculate_cost(spec, 1_000_000, 0) == pytest.approx(2.5)
        assert calculate_cost(spec, 2000, 1000) == pytest.approx(0.015)

    def test_unpriced_model_is_free(self) -> None:
        assert calculate_cost(ModelSpec(id="local"), 5000, 5000) == 0.0


class TestValidationOutcome:
    def test_dangerous_cannot_be_valid(self) -> None:
        with pytest.raises(ValidationError):
            ValidationOutcome(valid=True, safety_level=SafetyLevel.DANGEROUS)

    def test_invalid_needs_error(self) -> None:
        with pytest.raises(ValidationError):
            ValidationOutcome(valid=False)

    def test_valid_without_errors(self) -> None:
        with pytest.raises(ValidationError):
            ValidationOutcome(valid=True, errors=["x"])

    def test_caution_may_be_valid(self) -> None:
        outcome = ValidationOutcome(
            valid=True, warnings=["Attempting to save file"], safety_level=SafetyLevel.CAUTION
        )
        assert outcome.valid


class TestImmutability:
    def test_chat_message_frozen(self) -> None:
        message = ChatMessage(role=MessageRole.USER, content="hi")
        with pytest.raises(ValidationError):
            message.content = "changed"  # type: ignore[misc]

    def test_execution_result_frozen(self) -> None:
        result = ExecutionResult(
            success=True, session_id="s", validation=ValidationOutcome(valid=True)
        )
        with pytest.raises(ValidationError):
            result.success = False  # type: ignore[misc]

    def test_conversation_message_to_chat(self) -> None:
        message = ConversationMessage(role=MessageRole.ASSISTANT, content="ok", tokens=3)
        assert message.to_chat() == ChatMessage(role=MessageRole.ASSISTANT, content="ok")
        assert message.id.startswith("msg-")

    def test_roles_from_strings(self) -> None:
        assert ChatMessage(role="user", content="x").role == MessageRole.USER

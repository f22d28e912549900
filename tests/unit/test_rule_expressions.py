"""Tests for the restricted rule condition language."""

import pytest

from cvsession.core.errors import ExpressionError
from cvsession.services.rule_expressions import compile_condition, evaluate_condition

_CONTEXT = {
    "session": {
        "completed_steps": ["upload", "processing"],
        "progress_percentage": 22,
        "form_data": {"selected_features": ["cv-analysis", "podcast-generation"]},
        "user_id": None,
    },
    "features": {"cv-analysis": {"enabled": True}},
}


class TestEvaluateCondition:
    """Tests for evaluate_condition()."""

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ('"upload" in session.completed_steps', True),
            ('"analysis" in session.completed_steps', False),
            ('"analysis" not in session.completed_steps', True),
            ("session.progress_percentage >= 20", True),
            ("10 < session.progress_percentage < 20", False),
            ('features["cv-analysis"].enabled', True),
            ('features["cv-analysis"].enabled and session.progress_percentage > 50', False),
            ('not features["cv-analysis"].enabled or True', True),
            ("len(session.form_data.selected_features) == 2", True),
            ("session.user_id is None", True),
            ("session.completed_steps[0] == 'upload'", True),
            ("-1 < 0", True),
        ],
    )
    def test_supported_expressions(self, expression, expected) -> None:
        """Whitelisted comparisons, membership and boolean logic evaluate."""
        assert evaluate_condition(expression, _CONTEXT) is expected

    def test_missing_keys_evaluate_to_none(self) -> None:
        """Missing keys read as None instead of raising."""
        assert evaluate_condition("session.not_a_field is None", _CONTEXT) is True
        assert evaluate_condition('features["video"].enabled', _CONTEXT) is False

    def test_unknown_name_raises(self) -> None:
        """Only the session and features names are defined."""
        with pytest.raises(ExpressionError, match="unknown name 'steps'"):
            evaluate_condition("steps.upload", _CONTEXT)

    def test_type_mismatch_is_wrapped(self) -> None:
        """Runtime type errors surface as ExpressionError."""
        with pytest.raises(ExpressionError):
            evaluate_condition("session.progress_percentage > 'ten'", _CONTEXT)


class TestCompileCondition:
    """Tests for compile_condition() and the syntax whitelist."""

    @pytest.mark.parametrize(
        "expression",
        [
            "__import__('os').system('true')",
            "session.__class__",
            "session.progress_percentage + 1 > 2",
            "[x for x in session.completed_steps]",
            "lambda: True",
            "session[features]",
            "len(session, features)",
        ],
    )
    def test_rejects_constructs_outside_whitelist(self, expression) -> None:
        """Calls, dunders, arithmetic and comprehensions are refused."""
        with pytest.raises(ExpressionError):
            compile_condition(expression)

    @pytest.mark.parametrize("expression", ["", "   ", "session.("])
    def test_rejects_empty_or_malformed(self, expression) -> None:
        """Empty and unparsable conditions are refused."""
        with pytest.raises(ExpressionError):
            compile_condition(expression)

from datetime import date
from decimal import Decimal

import pytest

from src.core.compliance import (
    DEFAULT_POLICY_RULES,
    ComplianceEngine,
    PolicyRule,
    age_on,
    generate_compliance_summary,
    validate_order_lines,
)
from src.core.orders.models import (
    ComplianceContext,
    Nominee,
    OrderLine,
    PolicyOutcome,
    TransactionMode,
    ValidationResult,
)
from tests.factories import scheme

AS_OF = date(2025, 2, 5)


def _context(lines, schemes, **kwargs) -> ComplianceContext:
    return ComplianceContext(
        order_lines=lines,
        schemes={item.scheme_id: item for item in schemes},
        as_of=AS_OF,
        **kwargs,
    )


def test_non_whitelisted_scheme_blocks_order_with_single_note():
    restricted = scheme("sch_thematic", name="Lotus Thematic Fund", is_whitelisted=False)
    outcome = ComplianceEngine().evaluate(
        _context([OrderLine(scheme_id="sch_thematic", amount=Decimal("10000"))], [restricted])
    )

    assert outcome.is_valid is False
    assert outcome.errors == [
        "Policy: Lotus Thematic Fund require compliance approval because they are not on the "
        "approved list."
    ]
    assert outcome.warnings == []
    assert len(outcome.advisor_notes) == 1
    assert outcome.advisor_notes[0].startswith(
        "Non-whitelisted schemes must be reviewed manually per AMC policy: "
    )
    assert outcome.summary == outcome.advisor_notes[0]


def test_clean_order_is_valid_with_default_summary():
    outcome = ComplianceEngine().check(
        _context([OrderLine(scheme_id="sch_eq_01", amount=Decimal("10000"))], [scheme()])
    )

    assert outcome.is_valid is True
    assert outcome.errors == []
    assert outcome.summary == "Compliance advisors found no additional considerations."


def test_large_high_risk_purchase_needs_acknowledgement_warning():
    risky = scheme("sch_small", name="Lotus Small Cap Fund", risk_level="High")
    lines = [OrderLine(scheme_id="sch_small", amount=Decimal("600000"))]

    unacknowledged = ComplianceEngine().evaluate(_context(lines, [risky]))
    acknowledged = ComplianceEngine().evaluate(_context(lines, [risky], risk_acknowledged=True))

    assert unacknowledged.is_valid is True
    assert unacknowledged.warnings == [
        "Policy: Capture a risk acknowledgement for Lotus Small Cap Fund (₹600,000) before "
        "execution."
    ]
    assert acknowledged.warnings == []


def test_overweight_category_raises_warning():
    outcome = ComplianceEngine().evaluate(
        _context(
            [OrderLine(scheme_id="sch_eq_01", amount=Decimal("10000"))],
            [scheme()],
            current_allocation={"Equity": Decimal("70"), "Debt": Decimal("30")},
        )
    )
    assert outcome.is_valid is True
    assert outcome.warnings == ["Policy: Equity allocation already exceeds 65% of the portfolio."]


def test_telephone_instruction_requires_euin():
    lines = [OrderLine(scheme_id="sch_eq_01", amount=Decimal("10000"))]
    missing = ComplianceEngine().evaluate(
        _context(lines, [scheme()], transaction_mode=TransactionMode(mode="Telephone"))
    )
    captured = ComplianceEngine().evaluate(
        _context(
            lines, [scheme()], transaction_mode=TransactionMode(mode="Telephone", euin="E123456")
        )
    )
    automated = ComplianceEngine().evaluate(
        _context(lines, [scheme()], transaction_mode=TransactionMode(mode="Automated"))
    )

    assert missing.is_valid is False
    assert "EUIN is mandatory" in missing.errors[0]
    assert captured.is_valid is True
    assert captured.advisor_notes == [
        "Telephone orders require EUIN capture: Telephone instruction meets EUIN policy."
    ]
    assert automated.advisor_notes == []


def test_minor_nominee_without_guardian_blocks_order():
    lines = [OrderLine(scheme_id="sch_eq_01", amount=Decimal("10000"))]
    minor = Nominee(name="Asha", date_of_birth=date(2015, 4, 1))
    guarded = minor.model_copy(
        update={
            "guardian_name": "Ravi",
            "guardian_pan": "ABCDE1234F",
            "guardian_relationship": "Father",
        }
    )

    blocked = ComplianceEngine().evaluate(_context(lines, [scheme()], nominees=[minor]))
    opted_out = ComplianceEngine().evaluate(
        _context(lines, [scheme()], nominees=[minor], opt_out_of_nomination=True)
    )
    complete = ComplianceEngine().evaluate(_context(lines, [scheme()], nominees=[guarded]))

    assert blocked.is_valid is False
    assert "Guardian details are mandatory" in blocked.errors[0]
    assert opted_out.is_valid is True
    assert complete.is_valid is True


def test_rules_do_not_short_circuit_and_notes_are_numbered():
    restricted = scheme(
        "sch_thematic", name="Lotus Thematic Fund", is_whitelisted=False, risk_level="High"
    )
    outcome = ComplianceEngine().evaluate(
        _context(
            [OrderLine(scheme_id="sch_thematic", amount=Decimal("600000"))],
            [restricted],
            transaction_mode=TransactionMode(mode="Telephone"),
        )
    )

    assert outcome.is_valid is False
    assert len(outcome.errors) == 2
    assert len(outcome.warnings) == 1
    assert len(outcome.advisor_notes) == 3
    assert outcome.summary.splitlines()[0].startswith("1. ")
    assert outcome.summary.splitlines()[2].startswith("3. ")


def test_base_validation_checks_scheme_presence_and_purchase_limits():
    bounded = scheme("sch_eq_01", min_investment="1000", max_investment="50000")
    result = validate_order_lines(
        _context(
            [
                OrderLine(scheme_id="sch_missing", amount=Decimal("10000")),
                OrderLine(scheme_id="sch_eq_01", amount=Decimal("500")),
                OrderLine(scheme_id="sch_eq_01", amount=Decimal("60000")),
                OrderLine(
                    scheme_id="sch_eq_01", amount=Decimal("100"), transaction_type="Redemption"
                ),
            ],
            [bounded],
        )
    )

    assert result.is_valid is False
    assert result.errors == [
        "Scheme sch_missing was not found.",
        "Minimum investment for Lotus Bluechip Equity Fund is ₹1,000.",
        "Maximum investment for Lotus Bluechip Equity Fund is ₹50,000.",
    ]


def test_evaluate_merges_base_findings():
    outcome = ComplianceEngine().evaluate(
        _context([], []),
        base=ValidationResult(is_valid=False, errors=["base error"], warnings=["base warning"]),
    )
    assert outcome.is_valid is False
    assert outcome.errors == ["base error"]
    assert outcome.warnings == ["base warning"]


def test_custom_rules_replace_defaults():
    rule = PolicyRule(
        id="always-note",
        description="Always adds a note",
        evaluate=lambda _context: PolicyOutcome(severity="note", message="noted", note="hello"),
    )
    engine = ComplianceEngine(rules=[rule])
    outcome = engine.evaluate(_context([], []))

    assert len(DEFAULT_POLICY_RULES) == 5
    assert engine.rules == (rule,)
    assert outcome.is_valid is True
    assert outcome.summary == "Always adds a note: hello"


def _fixed_rule(index: int, severity: str) -> PolicyRule:
    return PolicyRule(
        id=f"rule-{index}",
        description=f"Rule {index}",
        evaluate=lambda _context: PolicyOutcome(
            severity=severity, message=f"{severity} {index}", note=f"note {index}"
        ),
    )


@pytest.mark.parametrize(
    "severities",
    [
        [],
        ["note"],
        ["warning"],
        ["error"],
        ["note", "warning"],
        ["warning", "error", "note"],
        ["error", "error"],
        ["note", "note", "warning", "warning"],
    ],
)
def test_is_valid_tracks_error_findings_only(severities):
    engine = ComplianceEngine(
        rules=[_fixed_rule(index, severity) for index, severity in enumerate(severities)]
    )

    outcome = engine.evaluate(_context([], []))

    assert outcome.is_valid == (len(outcome.errors) == 0)
    assert len(outcome.errors) == severities.count("error")
    assert len(outcome.warnings) == severities.count("warning")
    assert len(outcome.advisor_notes) == len(severities)


@pytest.mark.parametrize(
    "notes, expected",
    [
        ([], "Compliance advisors found no additional considerations."),
        (["only"], "only"),
        (["first", "second"], "1. first\n2. second"),
    ],
)
def test_generate_compliance_summary(notes, expected):
    assert generate_compliance_summary(notes) == expected


def test_age_on_counts_completed_years():
    assert age_on(date(2007, 2, 6), AS_OF) == 17
    assert age_on(date(2007, 2, 5), AS_OF) == 18

import unittest
from datetime import timedelta

from procurement_workflow.workflow.model import EvidenceKind, Override, OverrideKind, Quote
from procurement_workflow.workflow.rules import Rule, RuleSet
from procurement_workflow.workflow.validation_gate import (
    ApprovalCardinality,
    GateContext,
    GateMode,
    ValidationGate,
    lowest_quote_id,
    variance_percent,
)
from tests.fakes import NOW, ORG_ID, build_request, standard_rules, three_quotes


SENIOR = {"appr1": 2, "appr2": 2}


def _rules(rules=None) -> RuleSet:
    return RuleSet.resolve(ORG_ID, standard_rules() if rules is None else rules)


def _codes(result):
    return {failure.code for failure in result.failures}


class CardinalityGateTest(unittest.TestCase):
    def setUp(self) -> None:
        self.gate = ValidationGate(converter=lambda amount, src, dst: amount * {"EUR": 1.1}.get(src, 1.0))
        self.rules = _rules()

    def _evaluate(self, request, *, vendor_approved=False, tiers=None):
        context = GateContext(approver_tiers=tiers or SENIOR, preferred_vendor_approved=vendor_approved)
        return self.gate.evaluate(request, self.rules, GateMode.CARDINALITY, context)

    def test_small_request_passes_with_single_approver(self) -> None:
        result = self._evaluate(build_request(amount=500))
        self.assertTrue(result.ok)
        self.assertEqual(result.cardinality, ApprovalCardinality.SINGLE)
        self.assertEqual(result.required_quotes, 0)

    def test_above_ceiling_requires_one_quote_unless_vendor_approved(self) -> None:
        request = build_request(amount=2000, quotes=(), preferred_quote_id=None)
        result = self._evaluate(request)
        self.assertEqual(_codes(result), {"quote_requirement"})
        self.assertTrue(all(failure.overridable for failure in result.failures))

        self.assertTrue(self._evaluate(request, vendor_approved=True).ok)

    def test_quote_band_requires_full_quote_count(self) -> None:
        one_quote = build_request(amount=6000, quotes=(Quote("q1", "v1", 6000, "USD"),))
        result = self._evaluate(one_quote)
        self.assertEqual(result.required_quotes, 3)
        self.assertIn("quote_requirement", _codes(result))

        approved_vendor = self._evaluate(one_quote, vendor_approved=True)
        self.assertEqual(approved_vendor.required_quotes, 1)
        self.assertTrue(approved_vendor.ok)

    def test_dual_approval_above_floor(self) -> None:
        request = build_request(amount=12000, quotes=three_quotes(), approver_secondary_id="appr2")
        result = self._evaluate(request)
        self.assertTrue(result.ok, result.failures)
        self.assertEqual(result.cardinality, ApprovalCardinality.DUAL)
        self.assertTrue(result.requires_dual)

    def test_dual_approval_with_trusted_vendor_needs_one_fewer_quote(self) -> None:
        request = build_request(amount=12000, quotes=three_quotes()[:2], approver_secondary_id="appr2")
        self.assertEqual(self._evaluate(request).required_quotes, 3)
        trusted = self._evaluate(request, vendor_approved=True)
        self.assertEqual(trusted.required_quotes, 2)
        self.assertTrue(trusted.ok)

    def test_approver_problems_are_not_overridable(self) -> None:
        missing = build_request(amount=12000, quotes=three_quotes())
        result = self._evaluate(missing)
        self.assertEqual(_codes(result), {"second_approver_required"})
        self.assertFalse(result.failures[0].overridable)

        same = build_request(amount=12000, quotes=three_quotes(), approver_secondary_id="appr1")
        self.assertEqual(_codes(self._evaluate(same)), {"approvers_not_distinct"})

    def test_finance_approver_above_ceiling_is_ineligible(self) -> None:
        request = build_request(amount=2000, approver_primary_id="fin-appr")
        result = self._evaluate(request, tiers={"fin-appr": 6})
        self.assertIn("approver_ineligible", _codes(result))

    def test_unknown_approver_is_reported(self) -> None:
        request = build_request(approver_primary_id="nobody")
        self.assertEqual(_codes(self._evaluate(request, tiers={"nobody": None})), {"approver_unknown"})

    def test_missing_dual_floor_defaults_to_single(self) -> None:
        rules = [rule for rule in standard_rules() if rule.number != 3]
        self.rules = _rules(rules)
        with self.assertLogs("procurement_workflow.validation", level="WARNING"):
            result = self._evaluate(build_request(amount=50000, quotes=three_quotes(50000)))
        self.assertEqual(result.cardinality, ApprovalCardinality.SINGLE)

    def test_missing_ceiling_is_an_overridable_rule_failure(self) -> None:
        rules = [rule for rule in standard_rules() if rule.number != 1]
        self.rules = _rules(rules)
        result = self._evaluate(build_request(amount=500))
        self.assertEqual(_codes(result), {"rules_not_configured"})
        self.assertEqual(result.failures[0].override_kind, OverrideKind.RULE_VALIDATION)

    def test_amount_is_converted_into_the_rule_currency(self) -> None:
        self.rules = _rules([Rule(number=1, threshold=1000, currency="USD"), Rule(number=3, threshold=10000)])
        request = build_request(amount=950, currency="EUR", quotes=(), preferred_quote_id=None)
        result = self._evaluate(request)
        self.assertEqual(result.required_quotes, 1)
        self.assertIn("quote_requirement", _codes(result))

    def test_raising_the_amount_never_removes_a_failure(self) -> None:
        previous = set()
        for amount in (100, 999, 1001, 4999, 5001, 9999, 10001, 50000):
            request = build_request(amount=amount, quotes=(), preferred_quote_id=None)
            codes = _codes(self._evaluate(request))
            self.assertTrue(previous <= codes, f"{amount}: {previous} not in {codes}")
            previous = codes


class OrderingGateTest(unittest.TestCase):
    def setUp(self) -> None:
        self.gate = ValidationGate()
        self.rules = _rules()

    def _evaluate(self, request, *evidence):
        context = GateContext(evidence=frozenset(evidence))
        return self.gate.evaluate(request, self.rules, GateMode.ORDERING, context)

    def test_small_order_only_needs_delivery_date(self) -> None:
        request = build_request(amount=500)
        self.assertEqual(_codes(self._evaluate(request)), {"estimated_delivery_date_missing"})
        self.assertTrue(self._evaluate(request, EvidenceKind.ESTIMATED_DELIVERY_DATE).ok)

    def test_payment_evidence_above_ceiling(self) -> None:
        result = self._evaluate(build_request(amount=2000), EvidenceKind.ESTIMATED_DELIVERY_DATE)
        self.assertEqual(_codes(result), {"proforma_missing", "proof_of_payment_missing"})

    def test_po_document_above_floor(self) -> None:
        result = self._evaluate(
            build_request(amount=12000),
            EvidenceKind.ESTIMATED_DELIVERY_DATE,
            EvidenceKind.PROFORMA,
            EvidenceKind.PROOF_OF_PAYMENT,
        )
        self.assertEqual(_codes(result), {"po_document_missing"})
        self.assertEqual(result.failures[0].override_kind, OverrideKind.PO_DOCUMENT)

    def test_missing_delivery_date_cannot_be_overridden(self) -> None:
        result = self._evaluate(build_request(amount=500))
        self.assertFalse(result.failures[0].overridable)

    def test_final_price_variance_is_checked_when_ordering(self) -> None:
        request = build_request(amount=1000, final_price=1060)
        result = self._evaluate(request, EvidenceKind.ESTIMATED_DELIVERY_DATE)
        self.assertEqual(_codes(result), {"final_price_variance"})
        self.assertAlmostEqual(result.variance_pct, 6.0)


class VarianceGateTest(unittest.TestCase):
    def setUp(self) -> None:
        self.gate = ValidationGate()
        self.rules = _rules()

    def _variance(self, final_price):
        request = build_request(amount=1000, final_price=final_price)
        return self.gate.evaluate(request, self.rules, GateMode.PRICE_VARIANCE)

    def test_within_tolerance(self) -> None:
        self.assertTrue(self._variance(1050).ok)
        self.assertTrue(self._variance(800).ok)

    def test_outside_tolerance(self) -> None:
        self.assertFalse(self._variance(1050.5).ok)
        self.assertFalse(self._variance(799).ok)

    def test_no_final_price_means_no_check(self) -> None:
        result = self._variance(None)
        self.assertTrue(result.ok)
        self.assertIsNone(result.variance_pct)

    def test_variance_percent(self) -> None:
        self.assertAlmostEqual(variance_percent(200, 150), -25.0)
        self.assertEqual(variance_percent(0, 150), 0.0)


class CompletionGateTest(unittest.TestCase):
    def test_delivery_documentation_required(self) -> None:
        gate = ValidationGate()
        missing = gate.evaluate(build_request(), _rules(), GateMode.COMPLETION, GateContext())
        self.assertEqual(_codes(missing), {"delivery_documentation_missing"})
        present = gate.evaluate(
            build_request(),
            _rules(),
            GateMode.COMPLETION,
            GateContext(evidence=frozenset({EvidenceKind.DELIVERY_DOCUMENTATION})),
        )
        self.assertTrue(present.ok)


class OverrideSatisfactionTest(unittest.TestCase):
    def setUp(self) -> None:
        self.gate = ValidationGate()
        request = build_request(amount=2000, quotes=(), preferred_quote_id=None)
        self.result = self.gate.evaluate(request, _rules(), GateMode.CARDINALITY, GateContext(approver_tiers=SENIOR))

    def _override(self, kind, **kwargs):
        return {kind: Override(kind=kind, justification="urgent", by_actor_id="buyer", at_timestamp=NOW, **kwargs)}

    def test_matching_override_resolves_failure(self) -> None:
        overrides = self._override(OverrideKind.QUOTE_REQUIREMENT)
        self.assertEqual(self.result.unresolved(overrides, NOW), ())

    def test_rule_validation_override_covers_quote_requirement(self) -> None:
        overrides = self._override(OverrideKind.RULE_VALIDATION)
        self.assertEqual(self.result.unresolved(overrides, NOW), ())

    def test_unrelated_or_expired_override_does_not_resolve(self) -> None:
        self.assertEqual(len(self.result.unresolved(self._override(OverrideKind.PROFORMA), NOW)), 1)
        expired = self._override(OverrideKind.QUOTE_REQUIREMENT, expires_at=NOW - timedelta(minutes=1))
        self.assertEqual(len(self.result.unresolved(expired, NOW)), 1)


class LowestQuoteTest(unittest.TestCase):
    def test_lowest_quote_compares_in_request_currency(self) -> None:
        request = build_request(
            quotes=(
                Quote("q1", "v1", 1000, "USD"),
                Quote("q2", "v2", 950, "EUR"),
                Quote("q3", "v3", 1000, "USD"),
            )
        )
        rates = {"EUR": 1.1, "USD": 1.0}
        converter = lambda amount, src, dst: amount * rates[src] / rates[dst]  # noqa: E731
        self.assertEqual(lowest_quote_id(request, converter), "q1")

    def test_ties_go_to_the_first_quote(self) -> None:
        request = build_request(quotes=(Quote("a", "v1", 10, "USD"), Quote("b", "v2", 10, "USD")))
        self.assertEqual(lowest_quote_id(request), "a")


if __name__ == "__main__":
    unittest.main()

"""Tests for definition loading and validation."""

import json

import pytest

from core.exceptions import ConfigurationError
from workflow.definition import (
    ConditionOperator,
    EventTrigger,
    ScheduledTrigger,
    StepType,
    ThresholdTrigger,
    dump_definition,
)
from workflow.validator import (
    is_valid_path,
    load_definition,
    load_definition_file,
    load_definitions_dir,
    unrecognized_keys,
)


def _inventory_payload() -> dict:
    return {
        "id": "inventory-optimization-workflow",
        "useCaseId": "inventory-optimization",
        "name": "Inventory Optimization Workflow",
        "version": "1.2.0",
        "description": "Keeps stock levels healthy",
        "triggers": [
            {"type": "scheduled", "schedule": "0 */6 * * *"},
            {"type": "event", "event": "inventory.reorder.point"},
            {"type": "threshold", "threshold": {"metric": "stock.level", "operator": "<", "value": 10}},
        ],
        "steps": [
            {
                "id": "analyze-sales-data",
                "name": "Analyze Sales Data",
                "type": "detect",
                "agent": "monitoring",
                "service": "inventory-optimization",
                "action": "analyzeSalesData",
                "parameters": {"period": "30d", "granularity": ["sku", "store"]},
                "outputs": ["salesAnalysis", "trends"],
                "errorHandling": {"retry": {"attempts": 3, "delay": 5000}, "escalate": True},
            },
            {
                "id": "generate-orders",
                "name": "Generate Orders",
                "type": "execute",
                "agent": "execution",
                "service": "inventory-optimization",
                "action": "generatePurchaseOrders",
                "outputs": ["orders"],
                "conditions": [
                    {"field": "analyze-sales-data.trends.rising", "operator": "=", "value": True},
                    {"field": "context.salesAnalysis.total", "operator": ">", "value": 100},
                ],
                "humanApprovalRequired": True,
                "errorHandling": {
                    "notification": {"recipients": ["ops@company.com"], "channels": ["email"]},
                    "fallback": "manual-ordering",
                },
            },
            {
                "id": "manual-ordering",
                "type": "report",
                "agent": "communication",
                "action": "requestManualOrder",
            },
        ],
        "metadata": {
            "requiredServices": ["inventory-optimization"],
            "requiredAgents": ["monitoring", "execution"],
            "criticality": "high",
            "owner": "supply-chain",
        },
    }


@pytest.mark.unit
class TestLoadDefinition:
    """Schema parsing of well-formed definitions."""

    def test_parses_camel_case_document(self):
        definition = load_definition(_inventory_payload())

        assert definition.id == "inventory-optimization-workflow"
        assert definition.use_case_id == "inventory-optimization"
        assert definition.step_ids == ["analyze-sales-data", "generate-orders", "manual-ordering"]

        first = definition.steps[0]
        assert first.type == StepType.DETECT
        assert first.error_handling.retry.attempts == 3
        assert first.error_handling.retry.delay_seconds == 5.0
        assert first.error_handling.escalate is True

        second = definition.steps[1]
        assert second.human_approval_required is True
        assert second.conditions[0].operator == ConditionOperator.EQ
        assert second.error_handling.fallback == "manual-ordering"
        assert second.error_handling.notification.channels == ["email"]

    def test_trigger_variants(self):
        definition = load_definition(_inventory_payload())
        scheduled, event, threshold = definition.triggers

        assert isinstance(scheduled, ScheduledTrigger)
        assert scheduled.schedule == "0 */6 * * *"
        assert isinstance(event, EventTrigger)
        assert event.event == "inventory.reorder.point"
        assert isinstance(threshold, ThresholdTrigger)
        assert threshold.threshold.operator == ConditionOperator.LT
        assert threshold.threshold.value == 10

    def test_accepts_json_string(self):
        definition = load_definition(json.dumps(_inventory_payload()))
        assert definition.name == "Inventory Optimization Workflow"

    def test_definition_is_frozen(self):
        definition = load_definition(_inventory_payload())
        with pytest.raises(Exception):
            definition.name = "changed"

    def test_unknown_metadata_is_kept(self):
        definition = load_definition(_inventory_payload())
        assert definition.metadata.criticality == "high"
        assert dump_definition(definition)["metadata"]["owner"] == "supply-chain"

    def test_delay_ms_alias(self):
        payload = _inventory_payload()
        payload["steps"][0]["errorHandling"]["retry"] = {"attempts": 2, "delayMs": 250}
        definition = load_definition(payload)
        assert definition.steps[0].error_handling.retry.delay == 250

    def test_unrecognized_keys_are_kept_and_reported(self):
        payload = _inventory_payload()
        payload["steps"][0]["errorHandling"]["retry"]["backoffMultiplier"] = 2
        payload["owner"] = "supply-chain"

        definition = load_definition(payload)

        assert unrecognized_keys(definition) == [
            "owner",
            "steps.0.errorHandling.retry.backoffMultiplier",
        ]
        wire = dump_definition(definition)
        assert wire["owner"] == "supply-chain"
        assert wire["steps"][0]["errorHandling"]["retry"]["backoffMultiplier"] == 2

    def test_event_filter(self):
        payload = _inventory_payload()
        payload["triggers"][1]["filter"] = {"quantity_lt": 20}

        definition = load_definition(payload)

        assert definition.triggers[1].filter == {"quantity_lt": 20}
        assert unrecognized_keys(definition) == []


@pytest.mark.unit
class TestRoundTrip:
    """Serializing and re-parsing yields the same definition."""

    def test_round_trip_is_identity(self):
        original = load_definition(_inventory_payload())
        wire = dump_definition(original)
        restored = load_definition(json.loads(json.dumps(wire)))

        assert restored == original
        assert dump_definition(restored) == wire

    def test_wire_format_is_camel_case(self):
        wire = dump_definition(load_definition(_inventory_payload()))
        assert "useCaseId" in wire
        step = wire["steps"][1]
        assert step["humanApprovalRequired"] is True
        assert "errorHandling" in step
        assert "use_case_id" not in wire


@pytest.mark.unit
class TestRejection:
    """Invalid definitions are rejected wholesale with every violation."""

    def _violations(self, payload) -> list[str]:
        with pytest.raises(ConfigurationError) as exc_info:
            load_definition(payload)
        assert exc_info.value.status_code == 422
        return exc_info.value.violations

    def test_not_an_object(self):
        violations = self._violations([1, 2, 3])
        assert violations == ["<root>: definition must be a JSON object"]

    def test_invalid_json(self):
        violations = self._violations("{not json")
        assert violations[0].startswith("<root>: invalid JSON")

    def test_missing_required_fields_all_reported(self):
        payload = _inventory_payload()
        del payload["name"]
        del payload["steps"][0]["action"]
        payload["steps"][1]["type"] = "teleport"

        violations = self._violations(payload)

        assert any(v.startswith("name:") for v in violations)
        assert any(v.startswith("steps.0.action:") for v in violations)
        assert any(v.startswith("steps.1.type:") for v in violations)

    def test_unknown_trigger_type(self):
        payload = _inventory_payload()
        payload["triggers"].append({"type": "webhook", "url": "http://x"})
        violations = self._violations(payload)
        assert any(v.startswith("triggers.3") for v in violations)

    def test_duplicate_step_ids(self):
        payload = _inventory_payload()
        payload["steps"][2]["id"] = "analyze-sales-data"
        violations = self._violations(payload)
        assert any("duplicate step id 'analyze-sales-data'" in v for v in violations)

    def test_empty_steps_and_triggers(self):
        payload = _inventory_payload()
        payload["steps"] = []
        payload["triggers"] = []
        violations = self._violations(payload)
        assert "steps: a workflow must declare at least one step" in violations
        assert "triggers: a workflow must declare at least one trigger" in violations

    def test_malformed_condition_path(self):
        payload = _inventory_payload()
        payload["steps"][1]["conditions"] = [{"field": "trends", "operator": "exists"}]
        violations = self._violations(payload)
        assert any("is not a well-formed dot path" in v for v in violations)

    def test_forward_reference(self):
        payload = _inventory_payload()
        payload["steps"][0]["conditions"] = [
            {"field": "generate-orders.orders.length", "operator": ">", "value": 0}
        ]
        violations = self._violations(payload)
        assert any("forward-references later step 'generate-orders'" in v for v in violations)

    def test_self_reference(self):
        payload = _inventory_payload()
        payload["steps"][1]["conditions"] = [{"field": "generate-orders.orders", "operator": "exists"}]
        violations = self._violations(payload)
        assert any("references the step's own outputs" in v for v in violations)

    def test_negative_retry(self):
        payload = _inventory_payload()
        payload["steps"][0]["errorHandling"]["retry"] = {"attempts": -1, "delay": -5}
        violations = self._violations(payload)
        assert "steps.0.errorHandling.retry.attempts: must be >= 0" in violations
        assert "steps.0.errorHandling.retry.delay: must be >= 0" in violations

    def test_self_fallback(self):
        payload = _inventory_payload()
        payload["steps"][1]["errorHandling"]["fallback"] = "generate-orders"
        violations = self._violations(payload)
        assert any("cannot fall back to itself" in v for v in violations)

    def test_invalid_cron(self):
        payload = _inventory_payload()
        payload["triggers"][0]["schedule"] = "every day at noon"
        violations = self._violations(payload)
        assert any(v.startswith("triggers.0.schedule: invalid cron expression") for v in violations)

    def test_schema_and_semantic_violations_reported_together(self):
        payload = _inventory_payload()
        payload["triggers"] = []
        payload["steps"][1]["id"] = "analyze-sales-data"
        payload["steps"][2]["type"] = "bogus"

        violations = self._violations(payload)

        assert any(v.startswith("steps.2.type:") for v in violations)
        assert "steps.1.id: duplicate step id 'analyze-sales-data' (first declared at steps.0)" in violations
        assert "triggers: a workflow must declare at least one trigger" in violations

    def test_cron_needs_five_or_six_fields(self):
        payload = _inventory_payload()
        payload["triggers"][0]["schedule"] = "0 0 12 * * MON 2026"
        violations = self._violations(payload)
        assert "triggers.0.schedule: invalid cron expression (expected 5-6 fields, got 7)" in violations

    def test_threshold_needs_comparison_operator(self):
        payload = _inventory_payload()
        payload["triggers"][2]["threshold"]["operator"] = "contains"
        violations = self._violations(payload)
        assert any("is not a comparison operator" in v for v in violations)

    def test_duplicate_outputs(self):
        payload = _inventory_payload()
        payload["steps"][0]["outputs"] = ["trends", "trends"]
        violations = self._violations(payload)
        assert "steps.0.outputs: duplicate output name 'trends'" in violations

    def test_unknown_fallback_is_only_a_warning(self):
        payload = _inventory_payload()
        payload["steps"][1]["errorHandling"]["fallback"] = "somewhere-else"
        definition = load_definition(payload)
        assert definition.steps[1].error_handling.fallback == "somewhere-else"


@pytest.mark.unit
class TestPaths:

    @pytest.mark.parametrize("path", ["a.b", "step-1.out_put", "context.pricing.changePercent", "s.list.0"])
    def test_valid(self, path):
        assert is_valid_path(path)

    @pytest.mark.parametrize("path", ["", "single", "a..b", ".a", "a.", "a.b c", None])
    def test_invalid(self, path):
        assert not is_valid_path(path)


@pytest.mark.unit
class TestDefinitionFiles:

    def test_load_file(self, tmp_path):
        path = tmp_path / "inventory.json"
        path.write_text(json.dumps(_inventory_payload()), encoding="utf-8")
        assert load_definition_file(path).id == "inventory-optimization-workflow"

    def test_directory_reports_every_bad_file(self, tmp_path):
        good = _inventory_payload()
        bad = _inventory_payload()
        bad["id"] = "bad"
        bad["steps"] = []
        (tmp_path / "a_good.json").write_text(json.dumps(good), encoding="utf-8")
        (tmp_path / "b_bad.json").write_text(json.dumps(bad), encoding="utf-8")
        (tmp_path / "c_broken.json").write_text("{", encoding="utf-8")

        with pytest.raises(ConfigurationError) as exc_info:
            load_definitions_dir(tmp_path)

        violations = exc_info.value.violations
        assert any(v.startswith("b_bad.json: steps") for v in violations)
        assert any(v.startswith("c_broken.json: <root>: invalid JSON") for v in violations)
        assert not any(v.startswith("a_good.json") for v in violations)

    def test_directory_loads_in_name_order(self, tmp_path):
        for name in ("b", "a"):
            payload = _inventory_payload()
            payload["id"] = f"wf-{name}"
            (tmp_path / f"{name}.json").write_text(json.dumps(payload), encoding="utf-8")
        assert [d.id for d in load_definitions_dir(tmp_path)] == ["wf-a", "wf-b"]

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_definitions_dir(tmp_path / "nope")

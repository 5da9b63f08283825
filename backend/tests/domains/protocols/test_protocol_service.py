"""Tests for the protocol rule store."""
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch
from uuid import uuid4

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError

from careloop.core.errors import ConcurrencyError, ConfigurationError
from careloop.domains.protocols.models import ProtocolAssignment, ProtocolConfig, ProtocolRule
from careloop.domains.protocols.schemas import ProtocolConfigPayload, ProtocolRuleCreate, QuestionRule, RedFlagRule
from careloop.domains.protocols.service import ProtocolService

NOW = datetime(2026, 10, 5, 14, 0, tzinfo=timezone.utc)


class TestProtocolService:
    @pytest.fixture(autouse=True)
    def frozen_clock(self):
        with patch("careloop.core.clock.utcnow", return_value=NOW):
            yield

    @pytest.fixture
    def mock_db(self):
        return MagicMock()

    @pytest.fixture
    def service(self, mock_db):
        return ProtocolService(mock_db)

    def make_rule(self, code: str, severity: str | None) -> ProtocolRule:
        rule = MagicMock(spec=ProtocolRule)
        rule.rule_code = code
        rule.severity = severity
        return rule

    # --- Assignments ---

    def test_assign_protocol_deactivates_previous(self, service, mock_db):
        previous = MagicMock(spec=ProtocolAssignment)
        previous.is_active = True
        mock_db.query.return_value.filter.return_value.with_for_update.return_value.all.return_value = [previous]
        episode_id = uuid4()

        assignment = service.assign_protocol(episode_id, "HF", "HIGH", assigned_by="SYSTEM_AUTO")

        assert previous.is_active is False
        assert previous.deactivated_at == NOW
        assert assignment.is_active is True
        assert assignment.episode_id == episode_id
        assert assignment.risk_level == "HIGH"
        assert assignment.assigned_at == NOW
        mock_db.add.assert_called_once_with(assignment)
        mock_db.commit.assert_called_once()

    def test_assign_protocol_in_callers_transaction(self, service, mock_db):
        mock_db.query.return_value.filter.return_value.with_for_update.return_value.all.return_value = []

        service.assign_protocol(uuid4(), "COPD", "LOW", commit=False)

        mock_db.commit.assert_not_called()

    def test_assign_protocol_race_is_concurrency_error(self, service, mock_db):
        mock_db.query.return_value.filter.return_value.with_for_update.return_value.all.return_value = []
        mock_db.flush.side_effect = [None, IntegrityError("INSERT", {}, Exception("duplicate key"))]

        with pytest.raises(ConcurrencyError):
            service.assign_protocol(uuid4(), "HF", "HIGH")

        mock_db.rollback.assert_called_once()

    # --- Configs ---

    def test_require_config_missing(self, service, mock_db):
        mock_db.query.return_value.filter.return_value.first.return_value = None

        with pytest.raises(ConfigurationError):
            service.require_config("HF", "HIGH")

    def test_upsert_config_retires_current(self, service, mock_db):
        current = MagicMock(spec=ProtocolConfig)
        current.active = True
        mock_db.query.return_value.filter.return_value.with_for_update.return_value.all.return_value = [current]

        config = service.upsert_config(ProtocolConfigPayload(condition_code="HF", risk_level="HIGH", vague_symptoms=["off"]))

        assert current.active is False
        assert config.active is True
        assert config.schema_version == 1
        assert config.vague_symptoms == ["off"]

    def test_config_payload_rejects_unknown_schema_version(self):
        with pytest.raises(PydanticValidationError):
            ProtocolConfigPayload(schema_version=2, condition_code="HF", risk_level="HIGH")

    # --- Rules ---

    def test_list_rules_applies_severity_filter(self, service, mock_db):
        rules = [
            self.make_rule("CHEST_PAIN", "CRITICAL"),
            self.make_rule("FATIGUE", "LOW"),
            self.make_rule("DOING_WELL", None),
        ]
        mock_db.query.return_value.filter.return_value.order_by.return_value.all.return_value = rules

        result = service.list_rules("HF", {"CRITICAL", "HIGH"})

        assert [r.rule_code for r in result] == ["CHEST_PAIN", "DOING_WELL"]

    def test_list_rules_without_filter(self, service, mock_db):
        rules = [self.make_rule("FATIGUE", "LOW")]
        mock_db.query.return_value.filter.return_value.order_by.return_value.all.return_value = rules

        assert service.list_rules("HF") == rules

    def test_rule_payload_is_discriminated_by_type(self):
        payload = ProtocolRuleCreate.model_validate({
            "rule_type": "RED_FLAG",
            "condition_code": "HF",
            "rule_code": "HF_CHEST_PAIN",
            "severity": "CRITICAL",
            "text_patterns": ["chest pain"],
        }).root

        assert isinstance(payload, RedFlagRule)

    def test_red_flag_rule_requires_severity(self):
        with pytest.raises(PydanticValidationError):
            ProtocolRuleCreate.model_validate({"rule_type": "RED_FLAG", "condition_code": "HF", "rule_code": "X"})

    def test_create_question_rule_keeps_variant_fields_in_extra(self, service, mock_db):
        payload = QuestionRule(
            rule_type="QUESTION",
            condition_code="COPD",
            rule_code="COPD_INHALER",
            follow_up_questions=["Are you using your inhaler?"],
        )

        rule = service.create_rule(payload)

        assert rule.severity is None
        assert rule.rule_type == "QUESTION"
        assert rule.action_type == "ASK_MORE"
        assert rule.extra == {"follow_up_questions": ["Are you using your inhaler?"]}
        mock_db.commit.assert_called_once()

    def test_create_red_flag_rule(self, service):
        payload = RedFlagRule(rule_type="RED_FLAG", condition_code="HF", rule_code="HF_WEIGHT_GAIN", severity="HIGH")

        rule = service.create_rule(payload)

        assert rule.severity == "HIGH"
        assert rule.extra == {}

"""Tests for check-in conversations."""
import pytest
from datetime import datetime, timezone
from unittest.mock import MagicMock, patch
from uuid import uuid4

from careloop.core.errors import ConfigurationError, ConflictError, NotFoundError, ValidationError
from careloop.domains.jobs.events import AlertKinds, Events
from careloop.domains.jobs.models import OperatorAlert
from careloop.domains.outreach.models import AttemptStatus, OutreachAttempt, OutreachPlan
from careloop.domains.risk.ai_client import AIResponse, ConversationalAIClient
from careloop.domains.risk.checkin_service import CheckInService
from careloop.domains.risk.models import CheckInInteraction, InteractionStatus
from careloop.domains.risk.service import ToolOutcome
from careloop.domains.risk.tools import AskMore, TOOL_SCHEMA

NOW = datetime(2026, 10, 5, 14, 0, tzinfo=timezone.utc)


class TestCheckInService:
    @pytest.fixture(autouse=True)
    def frozen_clock(self):
        with patch("careloop.core.clock.utcnow", return_value=NOW):
            yield

    @pytest.fixture
    def mock_db(self):
        return MagicMock()

    @pytest.fixture
    def ai_client(self):
        return MagicMock(spec=ConversationalAIClient)

    @pytest.fixture
    def service(self, mock_db, ai_client):
        service = CheckInService(mock_db, ai_client=ai_client)
        service.bus = MagicMock()
        service.adapter = MagicMock()
        return service

    @pytest.fixture
    def interaction(self):
        interaction = MagicMock(spec=CheckInInteraction)
        interaction.id = uuid4()
        interaction.episode_id = uuid4()
        interaction.status = InteractionStatus.IN_PROGRESS
        return interaction

    # --- open_interaction ---

    def test_open_interaction_completes_attempt(self, service, mock_db):
        attempt = MagicMock(spec=OutreachAttempt)
        attempt.id = uuid4()
        attempt.outreach_plan_id = uuid4()
        attempt.status = AttemptStatus.IN_PROGRESS
        plan = MagicMock(spec=OutreachPlan)
        plan.episode_id = uuid4()
        mock_db.query.return_value.filter.return_value.first.side_effect = [attempt, plan]

        with patch.object(service, "get_interaction_for_attempt", return_value=None):
            interaction = service.open_interaction(attempt.id)

        assert interaction.episode_id == plan.episode_id
        assert interaction.outreach_attempt_id == attempt.id
        assert interaction.status == InteractionStatus.IN_PROGRESS
        args, _ = service.bus.publish.call_args
        assert args[0] == Events.ATTEMPT_OUTCOME
        assert args[1]["outcome"] == AttemptStatus.COMPLETED
        mock_db.commit.assert_called_once()

    def test_open_interaction_twice_returns_existing(self, service, mock_db, interaction):
        with patch.object(service, "get_interaction_for_attempt", return_value=interaction):
            assert service.open_interaction(uuid4()) is interaction

        mock_db.add.assert_not_called()

    def test_open_interaction_for_finished_attempt(self, service, mock_db):
        attempt = MagicMock(spec=OutreachAttempt)
        attempt.status = AttemptStatus.NO_CONTACT
        mock_db.query.return_value.filter.return_value.first.return_value = attempt

        with patch.object(service, "get_interaction_for_attempt", return_value=None):
            with pytest.raises(ConflictError):
                service.open_interaction(uuid4())

    def test_open_interaction_unknown_attempt(self, service, mock_db):
        mock_db.query.return_value.filter.return_value.first.return_value = None

        with patch.object(service, "get_interaction_for_attempt", return_value=None):
            with pytest.raises(NotFoundError):
                service.open_interaction(uuid4())

    # --- handle_patient_message ---

    def test_turn_applies_valid_calls_and_rejects_malformed(self, service, mock_db, ai_client, interaction):
        context = MagicMock()
        context.to_payload.return_value = {"episode": {}}
        service.adapter.build_decision_context.return_value = context
        service.adapter.interpret_tool_call.return_value = ToolOutcome(name="ask_more", questions=["Any swelling?"])
        ai_client.respond.return_value = AIResponse(
            assistant_message="Thanks for sharing.",
            tool_calls=[
                {"name": "ask_more", "arguments": {"questions": ["Any swelling?"]}},
                {"name": "prescribe", "arguments": {"drug": "x"}},
            ],
        )

        with patch.object(service, "get_interaction", return_value=interaction):
            reply = service.handle_patient_message(interaction.id, "  I feel a bit tired  ")

        ai_client.respond.assert_called_once_with({"episode": {}}, "I feel a bit tired", TOOL_SCHEMA)
        service.adapter.interpret_tool_call.assert_called_once()
        call = service.adapter.interpret_tool_call.call_args.args[1]
        assert isinstance(call, AskMore)
        assert reply.assistant_message == "Thanks for sharing."
        assert reply.questions == ["Any swelling?"]
        assert len(reply.rejected) == 1
        assert reply.rejected[0]["tool_call"]["name"] == "prescribe"
        assert reply.escalated is False
        mock_db.commit.assert_called_once()

    def test_escalated_reply(self, service, ai_client, interaction):
        service.adapter.build_decision_context.return_value = MagicMock()
        service.adapter.interpret_tool_call.return_value = ToolOutcome(name="raise_flag", escalated=True, signal_id=uuid4())
        ai_client.respond.return_value = AIResponse(
            assistant_message="A nurse will call you shortly.",
            tool_calls=[{"name": "raise_flag", "arguments": {"flagType": "CHEST_PAIN", "severity": "CRITICAL", "rationale": "r"}}],
        )

        with patch.object(service, "get_interaction", return_value=interaction):
            reply = service.handle_patient_message(interaction.id, "My chest hurts")

        assert reply.escalated is True

    def test_missing_configuration_fails_interaction_and_alerts(self, service, mock_db, ai_client, interaction):
        service.adapter.build_decision_context.side_effect = ConfigurationError("No active protocol config for HF/HIGH")

        with patch.object(service, "get_interaction", return_value=interaction):
            with pytest.raises(ConfigurationError):
                service.handle_patient_message(interaction.id, "Hello")

        assert interaction.status == InteractionStatus.FAILED
        assert interaction.failure_reason == "No active protocol config for HF/HIGH"
        [alert] = [c.args[0] for c in mock_db.add.call_args_list]
        assert isinstance(alert, OperatorAlert)
        assert alert.kind == AlertKinds.CONFIGURATION
        mock_db.commit.assert_called_once()
        ai_client.respond.assert_not_called()

    def test_empty_message_rejected(self, service):
        with pytest.raises(ValidationError):
            service.handle_patient_message(uuid4(), "   ")

    def test_closed_interaction_rejects_messages(self, service, interaction):
        interaction.status = InteractionStatus.COMPLETED

        with patch.object(service, "get_interaction", return_value=interaction):
            with pytest.raises(ConflictError):
                service.handle_patient_message(interaction.id, "Hello again")

    def test_services_share_default_ai_client(self, mock_db):
        with patch("careloop.domains.risk.ai_client._default_client", None):
            first = CheckInService(mock_db).ai_client
            second = CheckInService(mock_db).ai_client

        assert isinstance(first, ConversationalAIClient)
        assert first is second

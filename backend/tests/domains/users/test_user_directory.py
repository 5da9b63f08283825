"""Tests for the nurse roster."""
import pytest
from unittest.mock import MagicMock
from uuid import uuid4

from sqlalchemy.dialects import postgresql

from careloop.domains.jobs.events import Events
from careloop.domains.users.models import User
from careloop.domains.users.roles import Roles
from careloop.domains.users.service import UserDirectory


class TestUserDirectory:
    @pytest.fixture
    def mock_db(self):
        return MagicMock()

    @pytest.fixture
    def directory(self, mock_db):
        directory = UserDirectory(mock_db)
        directory.bus = MagicMock()
        return directory

    @pytest.fixture
    def nurse(self):
        user = MagicMock(spec=User)
        user.id = uuid4()
        user.roles = [Roles.NURSE]
        user.is_active = False
        return user

    def test_activating_nurse_publishes_event(self, directory, mock_db, nurse):
        mock_db.query.return_value.filter.return_value.first.return_value = nurse

        directory.set_active(nurse.id, True)

        assert nurse.is_active is True
        args, _ = directory.bus.publish.call_args
        assert args[0] == Events.NURSE_ACTIVATED
        mock_db.commit.assert_called_once()

    def test_already_active_nurse_publishes_nothing(self, directory, mock_db, nurse):
        nurse.is_active = True
        mock_db.query.return_value.filter.return_value.first.return_value = nurse

        directory.set_active(nurse.id, True)

        directory.bus.publish.assert_not_called()

    def test_activating_admin_publishes_nothing(self, directory, mock_db, nurse):
        nurse.roles = [Roles.ADMIN]
        mock_db.query.return_value.filter.return_value.first.return_value = nurse

        directory.set_active(nurse.id, True)

        directory.bus.publish.assert_not_called()

    def test_unknown_user(self, directory, mock_db):
        mock_db.query.return_value.filter.return_value.first.return_value = None
        assert directory.set_active(uuid4(), True) is None

    def test_next_nurse_skips_locked_rows(self, directory, mock_db, nurse):
        ordered = mock_db.query.return_value.filter.return_value.order_by.return_value
        ordered.with_for_update.return_value.first.return_value = nurse

        assert directory.next_nurse_for_assignment() is nurse
        ordered.with_for_update.assert_called_once_with(skip_locked=True)

    def test_active_nurses_ordered_never_assigned_then_oldest(self, directory, mock_db):
        directory.find_active_nurses()

        order = mock_db.query.return_value.filter.return_value.order_by.call_args.args
        compiled = [str(clause.compile(dialect=postgresql.dialect())) for clause in order]
        assert compiled[0].endswith("last_assigned_at ASC NULLS FIRST")
        assert compiled[1].endswith("created_at ASC")

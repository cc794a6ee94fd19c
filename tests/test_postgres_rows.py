from datetime import datetime, timedelta, timezone
from uuid import uuid4

from authcore.storage.postgres import (
    _refresh_from_row,
    _session_from_row,
    _user_from_row,
    connection_kwargs,
)

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def test_user_row_without_role_falls_back():
    user_id = uuid4()
    user = _user_from_row(
        {
            "id": user_id,
            "phone": "+15551234567",
            "email": None,
            "role": None,
            "is_active": True,
            "is_suspended": False,
            "created_at": NOW,
            "updated_at": None,
        }
    )
    assert user.id == str(user_id)
    assert user.role == "RIDER"
    assert user.updated_at == NOW


def test_refresh_row_stringifies_ids():
    successor = uuid4()
    token = _refresh_from_row(
        {
            "id": uuid4(),
            "token": "ab" * 40,
            "user_id": uuid4(),
            "expires_at": NOW + timedelta(days=30),
            "created_at": NOW,
            "is_revoked": True,
            "revoked_at": NOW,
            "replaced_by": successor,
        }
    )
    assert token.replaced_by == str(successor)
    assert token.is_expired(NOW + timedelta(days=31))
    assert not token.is_expired(NOW)


def test_session_row():
    session = _session_from_row(
        {
            "id": uuid4(),
            "user_id": uuid4(),
            "token_hash": "f" * 32,
            "expires_at": NOW,
            "created_at": NOW,
            "is_active": False,
            "revoked_at": NOW,
        }
    )
    assert session.is_active is False
    assert session.token_hash == "f" * 32


def test_connections_carry_server_side_deadlines():
    kwargs = connection_kwargs(2.5)
    assert kwargs["autocommit"] is False
    assert kwargs["connect_timeout"] == 3
    assert kwargs["options"] == "-c statement_timeout=2500"

    assert connection_kwargs(0.2)["connect_timeout"] == 1

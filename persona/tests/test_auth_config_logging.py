import json
import logging
from datetime import datetime, timedelta, timezone

import jwt
import pytest
from fastapi import FastAPI, Depends
from fastapi.testclient import TestClient

from persona.core import auth
from persona.core.config import Settings, settings, validate_config
from persona.core.errors import AppError, PermissionError, UnauthorizedError, app_error_handler
from persona.core.logging import JsonFormatter, PrettyFormatter, latency_bucket_ms, log_event
from persona.models.actor import Actor


@pytest.fixture
def whoami_client():
    app = FastAPI()
    app.add_exception_handler(AppError, app_error_handler)

    @app.get("/whoami")
    def whoami(actor: Actor = Depends(auth.get_current_actor)):
        return {"userId": actor.user_id, "role": actor.role}

    return TestClient(app)


class TestTokens:
    def test_issued_token_round_trips(self):
        claims = auth.decode_token(auth.issue_token("u1", "admin", "Ana"))
        assert claims == {"sub": "u1", "role": "admin", "name": "Ana"}

    def test_expired_token(self):
        token = jwt.encode(
            {"sub": "u1", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
            settings.JWT_SECRET,
            algorithm="HS256",
        )
        with pytest.raises(UnauthorizedError, match="expired"):
            auth.decode_token(token)

    def test_foreign_secret(self):
        token = jwt.encode({"sub": "u1"}, "someone-else", algorithm="HS256")
        with pytest.raises(UnauthorizedError, match="Invalid token"):
            auth.decode_token(token)

    def test_missing_secret(self, monkeypatch):
        monkeypatch.setattr(settings, "JWT_SECRET", None)
        with pytest.raises(UnauthorizedError):
            auth.decode_token("anything")


class TestActorResolution:
    def test_bearer_identity(self, whoami_client, seed_user):
        seed_user("u1", role="admin")
        token = auth.issue_token("u1")

        body = whoami_client.get("/whoami", headers={"Authorization": f"Bearer {token}"}).json()

        # Role comes from the users row, not the token
        assert body == {"userId": "u1", "role": "admin"}

    def test_header_identity_outside_prod(self, whoami_client):
        assert whoami_client.get("/whoami", headers={"X-User-Id": "u9"}).json()["userId"] == "u9"

    def test_header_identity_ignored_in_prod(self, whoami_client, monkeypatch):
        monkeypatch.setattr(settings, "ENVIRONMENT", "prod")
        response = whoami_client.get("/whoami", headers={"X-User-Id": "u9"})
        assert response.status_code == 401

    def test_banned_user(self, seed_user):
        seed_user("u1", status="banned")
        with pytest.raises(PermissionError):
            auth.load_actor("u1")

    def test_unknown_user_gets_default_role(self):
        actor = auth.load_actor("ghost")
        assert actor.role == "user"
        assert actor.is_moderator is False

    def test_can_moderate(self):
        assert auth.can_moderate(Actor(user_id="u1"), "u1")
        assert not auth.can_moderate(Actor(user_id="u2"), "u1")
        assert auth.can_moderate(Actor(user_id="m", role="admin"), "u1")
        assert not auth.can_moderate(Actor(user_id="u1"), None)


class TestConfig:
    def test_strict_mode_raises_on_missing_keys(self):
        cfg = Settings(_env_file=None, DATABASE_URL=None, JWT_SECRET=None)
        with pytest.raises(RuntimeError, match="DATABASE_URL"):
            validate_config(strict=True, settings_obj=cfg)

    def test_lenient_mode_warns(self, caplog):
        cfg = Settings(_env_file=None, DATABASE_URL=None)
        with caplog.at_level(logging.WARNING, logger="persona"):
            assert validate_config(strict=False, settings_obj=cfg) is True
        assert "DATABASE_URL" in caplog.text

    def test_defaults(self):
        cfg = Settings(_env_file=None)
        assert cfg.DEFAULT_FREE_QUOTA == 100
        assert cfg.USAGE_DAILY_WINDOW_DAYS == 7
        assert cfg.USAGE_MAX_ENDPOINTS == 50


class TestLogging:
    def _record(self, **extra):
        record = logging.LogRecord("persona", logging.INFO, __file__, 1, "quota.exceeded", None, None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter(self):
        record = self._record(request_id="rid-1", user_id="u1", event_type="quota_reject")
        payload = json.loads(JsonFormatter().format(record))

        assert payload["message"] == "quota.exceeded"
        assert payload["request_id"] == "rid-1"
        assert payload["user_id"] == "u1"
        assert payload["event_type"] == "quota_reject"
        assert payload["timestamp"].endswith("Z")

    def test_pretty_formatter(self):
        line = PrettyFormatter().format(self._record(request_id="rid-1", user_id="u1"))
        assert "[rid=rid-1]" in line
        assert "user_id=u1" in line

    def test_log_event_truncates_extras(self, caplog):
        with caplog.at_level(logging.INFO, logger="persona"):
            log_event("info", "engagement.comment", user_id="u1", extra={"text": "x" * 1000})
        record = caplog.records[-1]
        assert record.user_id == "u1"
        assert record.text.endswith("...<truncated>")

    @pytest.mark.parametrize(
        "latency,bucket", [(None, "unknown"), (5, "<10ms"), (50, "10-100ms"), (250, "100-500ms"), (2000, ">=1000ms")]
    )
    def test_latency_buckets(self, latency, bucket):
        assert latency_bucket_ms(latency) == bucket

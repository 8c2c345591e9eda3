from datetime import datetime, timedelta, timezone

import pytest

from evogate.errors import InstanceNotFoundError, InvalidTransitionError
from evogate.models import ChatbotSetting, IntegrationSession, SinkConfig
from evogate.services.instance_service import (
    apply_connection_update,
    delete_instance,
    expire_disconnected_instances,
    get_instance,
    list_instances,
    provision_instance,
    upsert_chatbot_setting,
    upsert_sink_config,
)
from evogate.services.session_store import ensure_timezone
from evogate.services.settings_service import load_chatbot_configs, load_sink_settings
from evogate.services.state_machine import InstanceState

T0 = datetime(2024, 1, 1, 10, 0, tzinfo=timezone.utc)


class TestProvisioning:
    def test_provision_is_idempotent(self, db_session):
        first, created = provision_instance(db_session, "shop", now=T0)
        second, created_again = provision_instance(db_session, "shop")

        assert created is True
        assert created_again is False
        assert first.id == second.id
        assert first.state == InstanceState.CONNECTING.value

    def test_list_and_get(self, db_session):
        provision_instance(db_session, "b")
        provision_instance(db_session, "a")

        assert [instance.name for instance in list_instances(db_session)] == ["a", "b"]
        assert get_instance(db_session, "a").name == "a"
        with pytest.raises(InstanceNotFoundError):
            get_instance(db_session, "missing")

    def test_delete_cascades(self, db_session, store):
        provision_instance(db_session, "A")
        upsert_sink_config(db_session, "A", "queue")
        upsert_chatbot_setting(db_session, "A", "n8n", api_url="https://n8n.test")
        db_session.commit()
        store.create("A", "123@g.us", "n8n", "ref-1")

        delete_instance(db_session, "A")
        db_session.commit()

        assert db_session.query(SinkConfig).count() == 0
        assert db_session.query(ChatbotSetting).count() == 0
        assert db_session.query(IntegrationSession).count() == 0


class TestConnectionLifecycle:
    def test_open_then_close(self, db_session):
        provision_instance(db_session, "A", now=T0)

        connected = apply_connection_update(db_session, "A", "open", now=T0)
        assert connected.state == InstanceState.CONNECTED.value

        later = T0 + timedelta(minutes=1)
        disconnected = apply_connection_update(db_session, "A", "close", now=later)
        assert disconnected.state == InstanceState.DISCONNECTED.value
        assert ensure_timezone(disconnected.disconnected_at) == later

    def test_repeated_state_is_a_no_op(self, db_session):
        provision_instance(db_session, "A", now=T0)
        instance = apply_connection_update(db_session, "A", "connecting", now=T0 + timedelta(hours=1))
        assert ensure_timezone(instance.updated_at) == T0

    def test_unknown_state(self, db_session):
        provision_instance(db_session, "A")
        with pytest.raises(ValueError):
            apply_connection_update(db_session, "A", "sleeping")

    def test_expire_after_disconnection(self, db_session):
        provision_instance(db_session, "A", now=T0)
        provision_instance(db_session, "B", now=T0)
        apply_connection_update(db_session, "A", "close", now=T0)
        apply_connection_update(db_session, "B", "close", now=T0 + timedelta(minutes=20))

        expired = expire_disconnected_instances(db_session, 30, now=T0 + timedelta(minutes=30))

        assert expired == ["A"]
        assert get_instance(db_session, "A").state == InstanceState.EXPIRED.value
        assert get_instance(db_session, "B").state == InstanceState.DISCONNECTED.value

    def test_expired_instance_cannot_reconnect(self, db_session):
        provision_instance(db_session, "A", now=T0)
        apply_connection_update(db_session, "A", "close", now=T0)
        expire_disconnected_instances(db_session, 1, now=T0 + timedelta(minutes=5))

        with pytest.raises(InvalidTransitionError):
            apply_connection_update(db_session, "A", "open")

    def test_expiry_disabled(self, db_session):
        assert expire_disconnected_instances(db_session, 0) == []


class TestSinkConfig:
    def test_upsert_and_load(self, db_session):
        provision_instance(db_session, "A")
        upsert_sink_config(
            db_session,
            "A",
            "webhook",
            url="https://hooks.test",
            events=["messages.upsert"],
            headers={"X-Token": "t"},
            max_retries=5,
        )
        upsert_sink_config(db_session, "A", "webhook", by_events=True)
        db_session.commit()

        [settings] = load_sink_settings(db_session, "A")
        assert settings.url == "https://hooks.test"
        assert settings.by_events is True
        assert settings.events == ("messages.upsert",)
        assert settings.headers == (("X-Token", "t"),)
        assert settings.max_retries == 5
        assert settings.subscribes("messages.upsert")
        assert not settings.subscribes("presence.update")

    def test_disabled_sinks_are_not_loaded(self, db_session):
        provision_instance(db_session, "A")
        upsert_sink_config(db_session, "A", "queue", enabled=False)
        assert load_sink_settings(db_session, "A") == []

    def test_webhook_requires_url(self, db_session):
        provision_instance(db_session, "A")
        with pytest.raises(ValueError):
            upsert_sink_config(db_session, "A", "webhook")

    def test_unknown_kind(self, db_session):
        provision_instance(db_session, "A")
        with pytest.raises(ValueError):
            upsert_sink_config(db_session, "A", "smtp")


class TestChatbotSetting:
    def test_upsert_and_load(self, db_session):
        provision_instance(db_session, "A")
        upsert_chatbot_setting(
            db_session,
            "A",
            "typebot",
            api_url="https://typebot.test",
            bot_id="bot-1",
            trigger_type="keyword",
            trigger_operator="contains",
            trigger_value="menu",
            ignore_jids=["@g.us"],
        )
        upsert_chatbot_setting(db_session, "A", "typebot", expire_minutes=15)
        db_session.commit()

        [config] = load_chatbot_configs(db_session, "A")
        assert config.bot_id == "bot-1"
        assert config.trigger_operator == "contains"
        assert config.expire_minutes == 15
        assert config.ignore_jids == ("@g.us",)

    def test_validation(self, db_session):
        provision_instance(db_session, "A")
        with pytest.raises(ValueError):
            upsert_chatbot_setting(db_session, "A", "dialogflow", api_url="https://x.test")
        with pytest.raises(ValueError):
            upsert_chatbot_setting(db_session, "A", "n8n", api_url="https://x.test", trigger_type="sometimes")
        with pytest.raises(ValueError):
            upsert_chatbot_setting(db_session, "A", "n8n", api_url="https://x.test", trigger_operator="like")
        with pytest.raises(ValueError):
            upsert_chatbot_setting(db_session, "A", "n8n")

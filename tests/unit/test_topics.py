"""
Unit tests for relay topic routing and the IoT Hub topic schema
"""
import pytest

from cloud_relay.topics import (
    C2D_TOPIC,
    CONSUMER_TOPICS,
    PRODUCER_TOPICS,
    TWIN_TOPIC,
    HubTopics,
    TopicSchemaError,
    is_producer_topic,
    parse_twin_response,
)


def test_routing_table():
    assert PRODUCER_TOPICS == ("telemetry", "state", "device")
    assert CONSUMER_TOPICS == ("c2d", "device-twin")
    assert C2D_TOPIC == "c2d"
    assert TWIN_TOPIC == "device-twin"


@pytest.mark.parametrize("topic", ["telemetry", "state", "device"])
def test_producer_topics_are_relayed(topic):
    assert is_producer_topic(topic)


@pytest.mark.parametrize("topic", ["ack", "c2d", "device-twin", "telemetry/sub", ""])
def test_other_topics_are_not_relayed(topic):
    assert not is_producer_topic(topic)


@pytest.mark.unit
class TestHubTopics:
    @pytest.fixture
    def schema(self):
        return HubTopics("dev-01")

    def test_username(self, schema):
        assert schema.username("hub.azure-devices.net", "2021-04-12") == \
            "hub.azure-devices.net/dev-01/?api-version=2021-04-12"

    def test_events_encodes_property_bag(self, schema):
        topic = schema.events({"$.ct": "application/json", "$.ce": "utf-8", "topic": "telemetry"})
        assert topic == \
            "devices/dev-01/messages/events/$.ct=application%2Fjson&$.ce=utf-8&topic=telemetry"

    def test_events_without_properties(self, schema):
        assert schema.events() == "devices/dev-01/messages/events/"

    def test_devicebound(self, schema):
        assert schema.devicebound_filter() == "devices/dev-01/messages/devicebound/#"
        assert schema.is_devicebound("devices/dev-01/messages/devicebound/%24.mid=1")
        assert not schema.is_devicebound("devices/other/messages/devicebound/x")

    def test_twin_topics(self, schema):
        assert schema.twin_get("7") == "$iothub/twin/GET/?$rid=7"
        assert schema.twin_response_filter() == "$iothub/twin/res/#"
        assert schema.twin_desired_patch_filter() == "$iothub/twin/PATCH/properties/desired/#"
        assert schema.is_desired_patch("$iothub/twin/PATCH/properties/desired/?$version=3")

    @pytest.mark.parametrize("bad", ["", "has space", "a/b", "x" * 129])
    def test_invalid_device_id(self, bad):
        with pytest.raises(TopicSchemaError):
            HubTopics(bad)


def test_parse_twin_response():
    assert parse_twin_response("$iothub/twin/res/200/?$rid=abc") == (200, "abc")
    assert parse_twin_response("$iothub/twin/res/404/?$rid=1&$version=2") == (404, "1")


def test_parse_twin_response_rejects_other_topics():
    with pytest.raises(TopicSchemaError):
        parse_twin_response("devices/x/messages/devicebound/")
    with pytest.raises(TopicSchemaError):
        parse_twin_response("$iothub/twin/res/abc/?$rid=1")

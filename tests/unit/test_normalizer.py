import uuid
from datetime import datetime, timezone

from metahub.persistence.models import Channel, EventType
from metahub.webhooks.events import normalize

WS = uuid.uuid4()
OTHER_WS = uuid.uuid4()


def resolver(mapping):
    calls = []

    def _resolve(channel, account_id):
        calls.append((channel, account_id))
        return mapping.get((channel, account_id))

    _resolve.calls = calls
    return _resolve


def whatsapp_payload(messages=(), statuses=(), phone_number_id="PN1", entry_id="WABA1", contacts=()):
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": entry_id,
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": phone_number_id},
                            "contacts": list(contacts),
                            "messages": list(messages),
                            "statuses": list(statuses),
                        },
                    }
                ],
            }
        ],
    }


def text_message(mid="wamid.1", sender="15550001111", ts="1700000000", body="hi"):
    return {"id": mid, "from": sender, "timestamp": ts, "type": "text", "text": {"body": body}}


def test_whatsapp_text_message():
    payload = whatsapp_payload(
        [text_message()],
        contacts=[{"wa_id": "15550001111", "profile": {"name": "Dana"}}],
    )
    result = normalize(payload, resolver({(Channel.whatsapp, "PN1"): WS}))
    assert len(result.events) == 1
    event = result.events[0]
    assert event.workspace_id == WS
    assert event.channel == Channel.whatsapp
    assert event.event_type == EventType.message
    assert event.thread_id == "15550001111"
    assert event.external_message_id == "wamid.1"
    assert event.text == "hi"
    assert event.contact_name == "Dana"
    assert event.timestamp == datetime.fromtimestamp(1700000000, tz=timezone.utc)


def test_media_message_uses_caption_or_placeholder():
    messages = [
        {"id": "m1", "from": "1", "timestamp": "1700000000", "type": "image", "image": {"caption": "receipt"}},
        {"id": "m2", "from": "1", "timestamp": "1700000001", "type": "document", "document": {}},
    ]
    result = normalize(whatsapp_payload(messages), resolver({(Channel.whatsapp, "PN1"): WS}))
    assert [e.text for e in result.events] == ["receipt", "[document]"]


def test_interactive_reply_is_postback():
    message = {
        "id": "m3",
        "from": "1",
        "timestamp": "1700000000",
        "type": "interactive",
        "interactive": {"type": "button_reply", "button_reply": {"id": "yes", "title": "Yes please"}},
    }
    result = normalize(whatsapp_payload([message]), resolver({(Channel.whatsapp, "PN1"): WS}))
    assert result.events[0].event_type == EventType.postback
    assert result.events[0].text == "Yes please"


def test_status_dedup_key_includes_status():
    statuses = [
        {"id": "wamid.9", "status": "delivered", "timestamp": "1700000000", "recipient_id": "1"},
        {"id": "wamid.9", "status": "read", "timestamp": "1700000005", "recipient_id": "1"},
    ]
    result = normalize(whatsapp_payload(statuses=statuses), resolver({(Channel.whatsapp, "PN1"): WS}))
    assert [e.dedup_key for e in result.events] == ["wamid.9:delivered", "wamid.9:read"]
    assert all(not e.is_customer_message for e in result.events)


def test_unknown_status_is_skipped():
    statuses = [{"id": "wamid.9", "status": "deleted", "timestamp": "1700000000", "recipient_id": "1"}]
    result = normalize(whatsapp_payload(statuses=statuses), resolver({(Channel.whatsapp, "PN1"): WS}))
    assert result.events == []
    assert len(result.skipped) == 1


def test_duplicates_within_one_delivery_are_dropped():
    payload = whatsapp_payload([text_message(), text_message()])
    result = normalize(payload, resolver({(Channel.whatsapp, "PN1"): WS}))
    assert len(result.events) == 1
    assert result.duplicates == 1


def test_bad_entry_does_not_fail_the_batch():
    bad = {"id": "m-bad", "from": "1", "timestamp": "not-a-number", "type": "text", "text": {"body": "x"}}
    missing_sender = {"id": "m-nosender", "timestamp": "1700000000", "type": "text", "text": {"body": "x"}}
    payload = whatsapp_payload([bad, missing_sender, text_message(mid="m-good")])
    result = normalize(payload, resolver({(Channel.whatsapp, "PN1"): WS}))
    assert [e.external_message_id for e in result.events] == ["m-good"]
    assert len(result.skipped) == 2


def test_unresolved_workspace_is_skipped():
    result = normalize(whatsapp_payload([text_message()]), resolver({}))
    assert result.events == []
    assert result.skipped


def test_falls_back_to_business_account_id():
    result = normalize(whatsapp_payload([text_message()]), resolver({(Channel.whatsapp, "WABA1"): OTHER_WS}))
    assert result.events[0].workspace_id == OTHER_WS


def test_resolver_is_cached_per_request():
    resolve = resolver({(Channel.whatsapp, "PN1"): WS})
    payload = whatsapp_payload([text_message(mid="a"), text_message(mid="b"), text_message(mid="c")])
    normalize(payload, resolve)
    assert resolve.calls == [(Channel.whatsapp, "PN1")]


def test_messenger_message_and_postback():
    payload = {
        "object": "page",
        "entry": [
            {
                "id": "PAGE1",
                "messaging": [
                    {
                        "sender": {"id": "PSID1"},
                        "recipient": {"id": "PAGE1"},
                        "timestamp": 1700000000123,
                        "message": {"mid": "mid.1", "text": "hello"},
                    },
                    {
                        "sender": {"id": "PSID1"},
                        "recipient": {"id": "PAGE1"},
                        "timestamp": 1700000001000,
                        "postback": {"title": "Get Started", "payload": "GET_STARTED"},
                    },
                    {
                        "sender": {"id": "PAGE1"},
                        "recipient": {"id": "PSID1"},
                        "timestamp": 1700000002000,
                        "message": {"mid": "mid.echo", "text": "reply", "is_echo": True},
                    },
                ],
            }
        ],
    }
    result = normalize(payload, resolver({(Channel.messenger, "PAGE1"): WS}))
    assert len(result.events) == 2
    message, postback = result.events
    assert message.channel == Channel.messenger
    assert message.timestamp == datetime.fromtimestamp(1700000000.123, tz=timezone.utc)
    assert postback.event_type == EventType.postback
    assert postback.external_message_id == "postback:PSID1:1700000001000"
    assert postback.text == "Get Started"
    assert result.skipped == ["echo of an outbound message"]


def test_instagram_object_maps_to_instagram_channel():
    payload = {
        "object": "instagram",
        "entry": [
            {
                "id": "IG1",
                "messaging": [
                    {"sender": {"id": "IGSID"}, "timestamp": 1700000000000, "message": {"mid": "ig.1", "text": "yo"}}
                ],
            }
        ],
    }
    result = normalize(payload, resolver({(Channel.instagram, "IG1"): WS}))
    assert result.events[0].channel == Channel.instagram


def test_unsupported_object_is_unrecognized():
    result = normalize({"object": "user", "entry": []}, resolver({}))
    assert result.events == []
    assert result.skipped == ["unsupported object 'user'"]


def test_non_object_payload_is_tolerated():
    result = normalize(["not", "an", "object"], resolver({}))
    assert result.events == []


def test_unhashable_object_is_unrecognized():
    result = normalize({"object": ["page"], "entry": []}, resolver({}))
    assert result.events == []
    assert result.skipped == ["unsupported object ['page']"]


def test_messenger_non_string_text_is_ignored():
    payload = {
        "object": "page",
        "entry": [
            {
                "id": "PAGE1",
                "messaging": [
                    {
                        "sender": {"id": "PSID1"},
                        "timestamp": 1700000000000,
                        "message": {"mid": "mid.1", "text": {"body": "hello"}},
                    },
                    {
                        "sender": {"id": "PSID1"},
                        "timestamp": 1700000001000,
                        "message": {"mid": "mid.2", "text": 42, "attachments": [{"type": "image"}]},
                    },
                    {
                        "sender": {"id": "PSID1"},
                        "timestamp": 1700000002000,
                        "postback": {"title": ["Start"], "payload": "GET_STARTED"},
                    },
                ],
            }
        ],
    }
    result = normalize(payload, resolver({(Channel.messenger, "PAGE1"): WS}))
    assert [(e.message_type, e.text) for e in result.events] == [
        ("image", "[image]"),
        ("postback", "GET_STARTED"),
    ]
    assert result.skipped == ["message without text or attachments"]


def test_whatsapp_non_string_body_has_no_text():
    message = text_message()
    message["text"] = {"body": {"nested": True}}
    result = normalize(whatsapp_payload([message]), resolver({(Channel.whatsapp, "PN1"): WS}))
    assert result.events[0].text is None

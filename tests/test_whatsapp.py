import unittest
from unittest import mock

from trailhook import whatsapp
from webhook_fakes import FakeDB, import_main, make_settings


def _button_reply(payload=whatsapp.SAFE_RETURN_REPLY, context_id="wamid.alert-1", msg_id="wamid.reply-1"):
    msg = {"from": "919800000001", "id": msg_id, "type": "button", "button": {"payload": payload, "text": payload}}
    if context_id:
        msg["context"] = {"from": "15550001111", "id": context_id}
    return {"object": "whatsapp_business_account", "entry": [{"changes": [{"value": {"messages": [msg]}}]}]}


def _seeded_db():
    return FakeDB({
        "WhatsAppLog": {"wamid.alert-1": {"alertTableId": "alert_42"}},
        "AlertTable": {"alert_42": {"UserId": "user_7", "TripName": "Kedarkantha", "IsTripCompleted": False}},
        "UserTable": {"user_7": {"FullName": "Asha Rao"}},
    })


class VerifySubscriptionTests(unittest.TestCase):
    def test_matching_token_echoes_challenge(self):
        args = {"hub.mode": "subscribe", "hub.verify_token": "verify-me", "hub.challenge": "1158201444"}
        self.assertEqual(whatsapp.verify_subscription(args, "verify-me"), ("1158201444", 200))

    def test_wrong_token_or_mode_forbidden(self):
        self.assertEqual(
            whatsapp.verify_subscription({"hub.mode": "subscribe", "hub.verify_token": "nope"}, "verify-me")[1], 403
        )
        self.assertEqual(
            whatsapp.verify_subscription({"hub.mode": "unsubscribe", "hub.verify_token": "verify-me"}, "verify-me")[1], 403
        )

    def test_unconfigured_token_forbidden(self):
        self.assertEqual(whatsapp.verify_subscription({"hub.mode": "subscribe", "hub.verify_token": ""}, None)[1], 403)


class ExtractSafeReturnReplyTests(unittest.TestCase):
    def test_prefers_context_id(self):
        self.assertEqual(
            whatsapp.extract_safe_return_reply(_button_reply()),
            {"from": "919800000001", "context_id": "wamid.alert-1"},
        )

    def test_falls_back_to_message_id(self):
        reply = whatsapp.extract_safe_return_reply(_button_reply(context_id=None))
        self.assertEqual(reply["context_id"], "wamid.reply-1")

    def test_other_messages_ignored(self):
        self.assertIsNone(whatsapp.extract_safe_return_reply(_button_reply(payload="Need help")))
        self.assertIsNone(whatsapp.extract_safe_return_reply({"entry": [{"changes": [{"value": {"statuses": []}}]}]}))
        self.assertIsNone(whatsapp.extract_safe_return_reply({"entry": []}))
        self.assertIsNone(whatsapp.extract_safe_return_reply(None))


class HandleSafeReturnTests(unittest.TestCase):
    def setUp(self):
        self.db = _seeded_db()
        self.settings = make_settings()

    @mock.patch("trailhook.whatsapp.requests.post")
    def test_completes_trip_and_confirms(self, post):
        post.return_value = mock.Mock(status_code=200, text='{"messages":[{"id":"wamid.out"}]}')

        action = whatsapp.handle_safe_return(self.db, self.settings, _button_reply())

        self.assertEqual(action, "trip_completed")
        alert = self.db.doc("AlertTable", "alert_42")
        self.assertIs(alert["IsTripCompleted"], True)
        self.assertIsNotNone(alert["BackAndSafeTime"])

        post.assert_called_once()
        args, kwargs = post.call_args
        self.assertEqual(args[0], self.settings.whatsapp_graph_api_url)
        self.assertEqual(kwargs["headers"], {"Authorization": "Bearer graph-token"})
        body = kwargs["json"]
        self.assertEqual(body["to"], "919800000001")
        self.assertEqual(body["template"]["name"], "safe_return_confirmation_beta2")
        params = body["template"]["components"][0]["parameters"]
        self.assertEqual([p["text"] for p in params], ["Asha Rao", "Kedarkantha"])

    @mock.patch("trailhook.whatsapp.requests.post")
    def test_unknown_context_is_a_no_op(self, post):
        action = whatsapp.handle_safe_return(self.db, self.settings, _button_reply(context_id="wamid.unknown"))

        self.assertEqual(action, "log_not_found")
        self.assertEqual(self.db.writes, [])
        post.assert_not_called()

    @mock.patch("trailhook.whatsapp.requests.post")
    def test_send_failure_keeps_alert_update(self, post):
        post.side_effect = RuntimeError("graph down")

        action = whatsapp.handle_safe_return(self.db, self.settings, _button_reply())

        self.assertEqual(action, "trip_completed_unconfirmed")
        self.assertIs(self.db.doc("AlertTable", "alert_42")["IsTripCompleted"], True)

    @mock.patch("trailhook.whatsapp.requests.post")
    def test_send_skipped_without_graph_config(self, post):
        settings = make_settings(whatsapp_graph_api_url=None, whatsapp_graph_api_token=None)

        action = whatsapp.handle_safe_return(self.db, settings, _button_reply())

        self.assertEqual(action, "trip_completed_unconfirmed")
        post.assert_not_called()


class WhatsAppRouteTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.main = import_main()

    def setUp(self):
        self.main.db = _seeded_db()
        self.main.settings = make_settings()
        self.client = self.main.app.test_client()

    def test_handshake(self):
        ok = self.client.get("/webhook?hub.mode=subscribe&hub.verify_token=verify-me&hub.challenge=42")
        bad = self.client.get("/webhook?hub.mode=subscribe&hub.verify_token=wrong&hub.challenge=42")

        self.assertEqual((ok.status_code, ok.get_data(as_text=True)), (200, "42"))
        self.assertEqual(bad.status_code, 403)

    @mock.patch("trailhook.whatsapp.requests.post")
    def test_post_always_acknowledged(self, post):
        post.return_value = mock.Mock(status_code=200, text="{}")

        ok = self.client.post("/webhook", json=_button_reply())
        self.assertEqual(ok.status_code, 200)
        self.assertIs(self.main.db.doc("AlertTable", "alert_42")["IsTripCompleted"], True)

        with mock.patch("main.handle_safe_return", side_effect=RuntimeError("boom")):
            crashed = self.client.post("/webhook", json=_button_reply())
        self.assertEqual(crashed.status_code, 200)

    def test_other_methods_not_allowed(self):
        self.assertEqual(self.client.put("/webhook").status_code, 405)


if __name__ == "__main__":
    unittest.main()

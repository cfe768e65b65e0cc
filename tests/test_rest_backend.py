import unittest
from datetime import datetime, timezone

from aiohttp import web
from aiohttp.test_utils import TestServer

from marketchat.config import SupabaseSettings
from marketchat.errors import BackendError
from marketchat.rest_backend import SupabaseRestBackend

MESSAGE_ROW = {
    "id": "m1",
    "conversation_id": "c1",
    "sender_id": "u1",
    "message_type": "text",
    "content": "hello",
    "created_at": "2024-01-01T00:00:00+00:00",
    "sender": {"id": "u1", "username": "alice", "avatar_url": None},
    "reactions": [],
}


def create_fake_postgrest() -> web.Application:
    """PostgREST stand-in that records every request and serves canned rows."""

    requests = []

    async def record(request: web.Request):
        body = None
        if request.can_read_body:
            body = await request.json()
        requests.append(
            {
                "method": request.method,
                "path": request.path,
                "query": dict(request.query),
                "headers": request.headers.copy(),
                "body": body,
            }
        )
        return body

    async def rpc(request: web.Request) -> web.Response:
        body = await record(request)
        name = request.match_info["name"]
        if name == "get_user_conversations":
            return web.json_response([{"id": "c1", "unread_count": 3, "other_user": {"id": "u2", "username": "bob"}}])
        if name == "create_conversation":
            return web.json_response("c-new")
        if name == "mark_conversation_read" and body.get("p_conversation_id") == "denied":
            return web.json_response({"message": "permission denied", "code": "42501"}, status=403)
        return web.Response(status=204)

    async def messages(request: web.Request) -> web.Response:
        await record(request)
        if request.method == "POST":
            return web.json_response([MESSAGE_ROW], status=201)
        if request.method == "PATCH":
            return web.Response(status=204)
        if request.query.get("id") == "eq.missing":
            return web.json_response([])
        return web.json_response([MESSAGE_ROW])

    async def blocked_users(request: web.Request) -> web.Response:
        await record(request)
        if request.query.get("blocker_id") == "eq.u2":
            return web.json_response([{"id": "b1"}])
        return web.json_response([])

    async def broken(request: web.Request) -> web.Response:
        await record(request)
        return web.Response(status=500, text="upstream exploded")

    app = web.Application()
    app["requests"] = requests
    app.router.add_post("/rest/v1/rpc/{name}", rpc)
    app.router.add_route("*", "/rest/v1/messages", messages)
    app.router.add_get("/rest/v1/blocked_users", blocked_users)
    app.router.add_get("/rest/v1/conversations", broken)
    return app


class SupabaseRestBackendTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_fake_postgrest()
        self.server = TestServer(self.app)
        await self.server.start_server()
        settings = SupabaseSettings(
            url=str(self.server.make_url("")).rstrip("/"), anon_key="anon", access_token="jwt", user_id="u1"
        )
        self.backend = SupabaseRestBackend(settings)

    async def asyncTearDown(self):
        await self.backend.close()
        await self.server.close()

    @property
    def requests(self):
        return self.app["requests"]

    async def test_rpc_sends_auth_headers_and_params(self):
        rows = await self.backend.get_user_conversations("u1")

        self.assertEqual(rows[0]["unread_count"], 3)
        request = self.requests[-1]
        self.assertEqual(request["path"], "/rest/v1/rpc/get_user_conversations")
        self.assertEqual(request["body"], {"p_user_id": "u1"})
        self.assertEqual(request["headers"]["apikey"], "anon")
        self.assertEqual(request["headers"]["Authorization"], "Bearer jwt")

    async def test_create_conversation_returns_scalar_id(self):
        conversation_id = await self.backend.create_conversation("u1", "u2", "i1")

        self.assertEqual(conversation_id, "c-new")
        self.assertEqual(self.requests[-1]["body"], {"p_user1_id": "u1", "p_user2_id": "u2", "p_item_id": "i1"})

    async def test_fetch_messages_uses_cursor_filters(self):
        before = datetime(2024, 1, 2, tzinfo=timezone.utc)

        rows = await self.backend.fetch_messages("c1", limit=20, before=before)

        self.assertEqual(rows[0]["id"], "m1")
        query = self.requests[-1]["query"]
        self.assertEqual(query["conversation_id"], "eq.c1")
        self.assertEqual(query["order"], "created_at.desc")
        self.assertEqual(query["limit"], "20")
        self.assertEqual(query["created_at"], "lt.2024-01-02T00:00:00+00:00")

    async def test_fetch_missing_message_returns_none(self):
        self.assertIsNone(await self.backend.fetch_message("missing"))

    async def test_insert_asks_for_representation(self):
        row = await self.backend.insert_message({"conversation_id": "c1", "sender_id": "u1", "content": "hello"})

        self.assertEqual(row["sender"]["username"], "alice")
        request = self.requests[-1]
        self.assertEqual(request["method"], "POST")
        self.assertEqual(request["headers"]["Prefer"], "return=representation")

    async def test_mark_messages_read_filters_foreign_unread(self):
        await self.backend.mark_messages_read("c1", "u1")

        request = self.requests[-1]
        self.assertEqual(request["method"], "PATCH")
        self.assertEqual(request["query"]["sender_id"], "neq.u1")
        self.assertEqual(request["query"]["read_at"], "is.null")
        self.assertIn("read_at", request["body"])

    async def test_is_blocked_checks_direction(self):
        self.assertTrue(await self.backend.is_blocked("u2", "u1"))
        self.assertFalse(await self.backend.is_blocked("u1", "u2"))

    async def test_error_payload_becomes_backend_error(self):
        with self.assertRaises(BackendError) as ctx:
            await self.backend.mark_conversation_read("denied", "u1")

        self.assertEqual(ctx.exception.status, 403)
        self.assertEqual(ctx.exception.code, "42501")
        self.assertEqual(str(ctx.exception), "permission denied")

    async def test_plain_text_error_keeps_body(self):
        with self.assertRaises(BackendError) as ctx:
            await self.backend.get_conversation("c1")

        self.assertEqual(ctx.exception.status, 500)
        self.assertEqual(str(ctx.exception), "upstream exploded")

    async def test_connection_failure_becomes_backend_error(self):
        await self.server.close()

        with self.assertLogs("marketchat.rest_backend", level="WARNING"):
            with self.assertRaises(BackendError):
                await self.backend.get_user_conversations("u1")


if __name__ == "__main__":
    unittest.main()

"""
A2W Runtime: API Models + Server Tests

Request models are tested without FastAPI. The server tests drive the
REST and WebSocket surface through fastapi.testclient with an inline
dispatcher, so handler runs finish inside each request.
"""

import importlib.util
import os
import sys
import time
import unittest

_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from a2w.errors import InvalidInput
from api.models import (
    DelegateRequest,
    DelegationCompleteRequest,
    InsightRequest,
    RetryRequest,
    StopRequest,
    UnblockRequest,
    WeightRequest,
)
from runtime.agent import AgentRecord
from runtime.core import AgentRuntime
from runtime.executor import Completed, InlineDispatcher, NeedData

_has_fastapi = (
    importlib.util.find_spec("fastapi") is not None
    and importlib.util.find_spec("httpx") is not None
)


# ═══════════════════════════════════════════════════════════════════
# Request Models
# ═══════════════════════════════════════════════════════════════════

class TestRequestModels(unittest.TestCase):

    def test_unknown_keys_ignored(self):
        req = StopRequest.parse({"task_id": "T1", "override": True, "colour": "blue"})
        self.assertEqual(req.to_dict(), {"task_id": "T1", "override": True, "reason": ""})

    def test_task_id_required(self):
        for model in (StopRequest, InsightRequest, RetryRequest, DelegateRequest):
            with self.subTest(model=model.__name__):
                with self.assertRaises(InvalidInput):
                    model.parse({})

    def test_body_must_be_object(self):
        with self.assertRaises(InvalidInput):
            StopRequest.parse(["T1"])

    def test_override_must_be_bool(self):
        with self.assertRaises(InvalidInput):
            StopRequest.parse({"task_id": "T1", "override": "yes"})

    def test_insight_rating(self):
        InsightRequest.parse({"task_id": "T1", "payload": {"a": 1}, "rating": 1})
        with self.assertRaises(InvalidInput):
            InsightRequest.parse({"task_id": "T1", "payload": {"a": 1}, "rating": 2})
        with self.assertRaises(InvalidInput):
            InsightRequest.parse({"task_id": "T1", "payload": "a=1"})

    def test_weight(self):
        WeightRequest.parse({"weight": 0, "requested_by": "orchestrator"})
        with self.assertRaises(InvalidInput) as ctx:
            WeightRequest.parse({"weight": 100.5})
        self.assertEqual(len(ctx.exception.details["errors"]), 2)

    def test_unblock(self):
        req = UnblockRequest.parse({"task_id": "T1", "required": ["a"]})
        self.assertEqual(req.urgency, "normal")
        with self.assertRaises(InvalidInput):
            UnblockRequest.parse({"task_id": "T1", "required": []})
        with self.assertRaises(InvalidInput):
            UnblockRequest.parse({"task_id": "T1", "required": ["a"], "urgency": "asap"})

    def test_retry_new_id(self):
        self.assertIsNone(RetryRequest.parse({"task_id": "T1"}).new_task_id)
        with self.assertRaises(InvalidInput):
            RetryRequest.parse({"task_id": "T1", "new_task_id": ""})

    def test_delegation_complete(self):
        req = DelegationCompleteRequest.parse({"task_id": "T1", "outcome": "completed"})
        self.assertEqual(req.result, {})
        with self.assertRaises(InvalidInput):
            DelegationCompleteRequest.parse({"task_id": "T1", "outcome": "completed", "result": []})


# ═══════════════════════════════════════════════════════════════════
# Server
# ═══════════════════════════════════════════════════════════════════

class ScriptedHandler:

    def __init__(self, *steps):
        self.steps = list(steps)

    def execute(self, context, control, continuation):
        return self.steps.pop(0)(context, control, continuation)


@unittest.skipUnless(_has_fastapi, "fastapi and httpx are required for server tests")
class ServerCase(unittest.TestCase):

    def setUp(self):
        from fastapi.testclient import TestClient
        from api.server import create_app

        agent = AgentRecord(
            "agent-a", weight=40,
            allowed_callees=["agent-b", "agent-c"],
            weight_authorities=["orchestrator"],
        )
        self.runtime = AgentRuntime(
            agent, handler=self.make_handler(), dispatcher=InlineDispatcher(), stop_grace_seconds=0,
        )
        self.client = TestClient(create_app(runtime=self.runtime))
        self.client.__enter__()

    def tearDown(self):
        self.client.__exit__(None, None, None)
        self.runtime.shutdown()

    def make_handler(self):
        return None

    def post(self, path, body):
        return self.client.post(f"/a2w/v1/{path}", json=body)

    def get(self, path, **params):
        return self.client.get(f"/a2w/v1/{path}", params=params)

    def data(self, response):
        body = response.json()
        self.assertEqual(body["message_type"], "payload", body)
        self.assertEqual(body["agent_id"], "agent-a")
        return body["payload"]["data"]

    def error(self, response, status, code="E010_INVALID_INPUT"):
        self.assertEqual(response.status_code, status, response.text)
        body = response.json()
        self.assertEqual(body["message_type"], "error")
        self.assertEqual(body["payload"]["code"], code)
        self.assertEqual(body["payload"]["http_status"], status)
        return body["payload"]


class TestAgentEndpoints(ServerCase):

    def test_manifest(self):
        response = self.get("manifest")
        self.assertEqual(response.status_code, 200)
        manifest = self.data(response)
        self.assertEqual(manifest["weight"], 40)
        self.assertEqual(manifest["a2w_version"], "1.0")
        self.assertEqual(response.json()["a2w_version"], "1.0")

    def test_capabilities(self):
        self.assertEqual(self.data(self.get("capabilities"))["abilities"], [])

    def test_weight_update(self):
        response = self.post("weight", {"weight": 75, "requested_by": "orchestrator"})
        self.assertEqual(self.data(response)["weight"], 75)
        self.error(self.post("weight", {"weight": 10, "requested_by": "stranger"}),
                   403, "E020_PERMISSION_DENIED")
        self.error(self.post("weight", {"weight": 300, "requested_by": "orchestrator"}), 400)
        self.error(self.post("weight", {"weight": -1, "requested_by": "orchestrator"}), 400)
        self.assertEqual(self.data(self.get("manifest"))["weight"], 75)
        response = self.post("weight", {"weight": 100, "requested_by": "orchestrator"})
        self.assertEqual(self.data(response)["weight"], 100)

    def test_weight_requester_from_envelope(self):
        response = self.post("weight", {
            "a2w_version": "1.0",
            "agent_id": "orchestrator",
            "message_type": "payload",
            "payload": {"weight": 65},
        })
        self.assertEqual(response.status_code, 200, response.text)
        self.assertEqual(self.runtime.agent.weight, 65)

    def test_health_and_ready(self):
        self.assertEqual(self.client.get("/health").json()["payload"]["data"]["status"], "ok")
        self.assertEqual(self.client.get("/ready").status_code, 200)

    def test_stats(self):
        self.post("start", {"task_id": "T1"})
        stats = self.data(self.get("stats"))
        self.assertEqual(stats["tasks"], 1)
        self.assertEqual(stats["states"]["running"], 1)

    def test_unknown_route_is_error_envelope(self):
        self.error(self.client.get("/a2w/v1/nowhere"), 404)


class TestTaskEndpoints(ServerCase):

    def test_start_is_idempotent(self):
        first = self.post("start", {"task_id": "T1", "priority": 70, "weight_caller": 30})
        self.assertEqual(first.status_code, 202)
        created = self.data(first)
        self.assertTrue(created["created"])
        self.assertEqual(created["state"], "running")

        second = self.post("start", {"task_id": "T1", "priority": 5})
        self.assertEqual(second.status_code, 200)
        self.assertFalse(self.data(second)["created"])
        self.assertEqual(self.data(second)["handle"], created["handle"])

    def test_start_from_envelope(self):
        response = self.post("start", {
            "a2w_version": "1.0",
            "agent_id": "orchestrator",
            "message_type": "payload",
            "payload": {"task_id": "T2", "priority": 60},
        })
        self.assertEqual(response.status_code, 202, response.text)
        self.assertEqual(self.runtime.registry.entry("T2").context.caller_agent, "orchestrator")

    def test_start_rejects_bad_input(self):
        self.error(self.post("start", {"task_id": "T1", "priority": 101}), 400)
        self.error(self.client.post("/a2w/v1/start", content=b"{oops",
                                    headers={"content-type": "application/json"}), 400)
        self.error(self.post("start", {
            "a2w_version": "2.0", "agent_id": "x", "message_type": "payload", "payload": {},
        }), 400)
        self.error(self.post("start", {
            "a2w_version": "1.0", "agent_id": "x", "message_type": "need_data",
            "payload": {"task_id": "T1", "required": ["a"]},
        }), 400)

    def test_status(self):
        self.post("start", {"task_id": "T1"})
        status = self.data(self.get("status", task_id="T1"))
        self.assertEqual(status["state"], "running")
        self.assertEqual(status["task_id"], "T1")
        self.error(self.get("status"), 400)
        self.error(self.get("status", task_id="nope"), 404)

    def test_stop_and_terminate(self):
        self.post("start", {"task_id": "T1"})
        self.post("start", {"task_id": "T2"})
        stopped = self.data(self.post("stop", {"task_id": "T1"}))
        self.assertEqual(stopped, {"task_id": "T1", "state": "stopped", "stop_pending": False})
        self.assertEqual(self.data(self.post("terminate", {"task_id": "T2"}))["state"], "terminated")
        self.error(self.post("stop", {"task_id": "T1"}), 409)

    def test_interrupt_guard(self):
        self.post("start", {"task_id": "T1", "weight_caller": 90})
        self.error(self.post("stop", {"task_id": "T1"}), 403, "E030_LOW_WEIGHT")
        response = self.post("terminate", {"task_id": "T1", "override": True})
        self.assertEqual(self.data(response)["state"], "terminated")

    def test_report_before_finish(self):
        self.post("start", {"task_id": "T1"})
        self.error(self.get("report", task_id="T1"), 409)

    def test_logs_paging(self):
        self.post("start", {"task_id": "T1"})
        page = self.data(self.get("logs", limit="2"))
        self.assertEqual(len(page["entries"]), 2)
        rest = self.data(self.get("logs", cursor=str(page["next_cursor"]), task_id="T1"))
        self.assertTrue(all(e["seq"] > page["next_cursor"] for e in rest["entries"]))
        self.error(self.get("logs", cursor="abc"), 400)

    def test_retry(self):
        self.post("start", {"task_id": "T1"})
        self.error(self.post("retry", {"task_id": "T1"}), 409)
        self.post("terminate", {"task_id": "T1"})
        response = self.post("retry", {"task_id": "T1", "new_task_id": "T1b"})
        self.assertEqual(response.status_code, 202)
        self.assertEqual(self.data(response)["retry_of"], "T1")
        self.assertEqual(self.data(self.get("status", task_id="T1b"))["retry_of"], "T1")


class TestInsightFlow(ServerCase):

    def make_handler(self):
        return ScriptedHandler(
            lambda ctx, control, cont: NeedData(["market_trends"]),
            lambda ctx, control, cont: Completed(artifact={"trends": cont.insights["market_trends"]}),
        )

    def test_need_insight_report(self):
        started = self.data(self.post("start", {"task_id": "T1", "priority": 70, "weight_caller": 90}))
        self.assertEqual(started["state"], "waiting")

        partial = self.post("insights", {"task_id": "T1", "payload": {}})
        self.assertFalse(self.data(partial)["resumed"])
        self.assertEqual(self.data(partial)["missing"], ["market_trends"])

        response = self.post("insights", {"task_id": "T1", "payload": {"market_trends": "up"}, "rating": 0.7})
        self.assertTrue(self.data(response)["resumed"])
        self.assertEqual(self.data(self.get("status", task_id="T1"))["state"], "finished")

        report = self.data(self.get("report", task_id="T1"))
        self.assertEqual(report["artifact"], {"trends": "up"})
        self.error(self.post("insights", {"task_id": "T1", "payload": {"x": 1}}), 409)


class TestDelegationEndpoints(ServerCase):

    def test_delegate_and_complete(self):
        self.post("start", {"task_id": "T1"})
        response = self.post("delegate", {"task_id": "T1", "delegate_to": "agent-c", "reason": "pricing"})
        self.assertEqual(response.status_code, 202)
        request = self.data(response)
        self.assertEqual(request["delegation_chain"], ["agent-a"])
        self.assertEqual(request["task"]["caller_agent"], "agent-a")

        done = self.post("delegation/complete", {"task_id": "T1", "outcome": "needs_input",
                                                 "result": {"required": ["budget"]}})
        self.assertEqual(self.data(done)["state"], "waiting")

    def test_delegate_refusals(self):
        self.post("start", {"task_id": "T1", "metadata": {"delegation_chain": ["agent-b"]}})
        self.error(self.post("delegate", {"task_id": "T1", "delegate_to": "agent-z"}),
                   403, "E020_PERMISSION_DENIED")
        self.error(self.post("delegate", {"task_id": "T1", "delegate_to": "agent-b"}), 409)
        self.error(self.post("delegation/complete", {"task_id": "T1", "outcome": "completed"}), 409)


class TestUnblockEndpoint(ServerCase):

    def test_unblock_after_timeout(self):
        self.post("start", {"task_id": "T1", "deadline": "2000-01-01T00:00:00Z"})
        self.runtime.raise_need("T1", ["x"])
        self.runtime.sweep_deadlines()
        self.assertEqual(self.data(self.get("status", task_id="T1"))["state"], "blocked")

        response = self.post("unblock", {"task_id": "T1", "required": ["y"], "urgency": "high"})
        self.assertEqual(self.data(response)["missing"], ["y"])
        self.assertEqual(self.data(self.get("status", task_id="T1"))["state"], "waiting")


class TestWebSocket(ServerCase):

    def test_status_stream(self):
        with self.client.websocket_connect("/a2w/v1/ws/status") as ws:
            self.post("start", {"task_id": "T1"})
            states = [ws.receive_json()["payload"]["state"] for _ in range(3)]
        self.assertEqual(states, ["idle", "initializing", "running"])

    def test_ping_pong(self):
        with self.client.websocket_connect("/a2w/v1/ws/events") as ws:
            ws.send_json({"type": "ping"})
            message = ws.receive_json()
        self.assertEqual(message["message_type"], "payload")
        self.assertEqual(message["payload"]["data"], {"type": "pong"})

    def test_error_stream(self):
        with self.client.websocket_connect("/a2w/v1/ws/errors") as ws:
            self.post("start", {"task_id": "T1", "deadline": "2000-01-01T00:00:00Z"})
            self.runtime.sweep_deadlines()
            message = ws.receive_json()
        self.assertEqual(message["message_type"], "error")
        self.assertEqual(message["payload"]["code"], "E040_TIMEOUT")

    def test_unknown_channel_closed(self):
        from starlette.websockets import WebSocketDisconnect

        with self.assertRaises(WebSocketDisconnect) as ctx:
            with self.client.websocket_connect("/a2w/v1/ws/gossip") as ws:
                ws.receive_json()
        self.assertEqual(ctx.exception.code, 1008)

    def test_subscription_released_on_disconnect(self):
        with self.client.websocket_connect("/a2w/v1/ws/needs") as ws:
            ws.send_json({"type": "ping"})
            ws.receive_json()
            self.assertEqual(self.runtime.broadcaster.subscriber_count("needs"), 1)
        for _ in range(50):
            if self.runtime.broadcaster.subscriber_count("needs") == 0:
                break
            time.sleep(0.02)
        self.assertEqual(self.runtime.broadcaster.subscriber_count("needs"), 0)


if __name__ == "__main__":
    unittest.main()

"""Tests for the execution engine."""
import asyncio
import logging
import time
from unittest.mock import Mock

import pytest

from agent_graph.config import Settings
from agent_graph.dispatch import OperationDispatcher
from agent_graph.engine import NodeStatus, RunStatus, compile_flow, execute
from agent_graph.errors import FlowValidationError, RunFailedError
from agent_graph.state import new_context


def decl(node_id, op=None, inputs=(), outputs=(), **extra):
    """Declarative node; ports are names (string), (name, type) or full dicts."""
    def ports(spec):
        result = []
        for p in spec:
            if isinstance(p, dict):
                result.append(p)
            elif isinstance(p, str):
                result.append({"name": p, "type": "string"})
            else:
                result.append({"name": p[0], "type": p[1]})
        return result
    body = {
        "id": node_id,
        "inputs": ports(inputs),
        "outputs": ports(outputs),
        "transform": {"kind": "declarative", "op": op or node_id},
    }
    body.update(extra)
    return body


def run_plan(engine, document, request=None, **kwargs):
    plan = compile_flow(document)
    request = request or {}
    return asyncio.run(engine.run(plan, new_context(request), request.get("inputs", {}), **kwargs))


def fan_in_document():
    document = {
        "metadata": {"name": "fan_in"},
        "nodes": [
            decl("fetch_a", "fetch", outputs=[("value", "number")]),
            decl("fetch_b", "fetch", outputs=[("value", "number")]),
            decl("combine", inputs=[("a", "number"), ("b", "number")], outputs=[("total", "number")]),
        ],
        "edges": [
            {"from": "fetch_a.value", "to": "combine.a"},
            {"from": "fetch_b.value", "to": "combine.b"},
            {"from": "combine.total", "to": "_output.total"},
        ],
    }
    document["nodes"][0]["transform"]["args"] = {"value": 1}
    document["nodes"][1]["transform"]["args"] = {"value": 2}
    return document


class TestBasicRuns:
    """Test straightforward runs."""

    def test_linear_flow(self, registry, engine_factory, linear_document):
        registry.register("upper", lambda args, inputs, ctx: inputs["text"].upper())

        result = run_plan(engine_factory(), linear_document, {"inputs": {"text": "hi"}})

        assert result.status == RunStatus.SUCCEEDED
        assert result.output == {"text": "HI!"}
        assert result.outputs == {"upper": "HI", "exclaim": "HI!"}
        assert result.error is None
        assert [r.node_id for r in result.trace] == ["upper", "exclaim"]
        assert all(r.status == NodeStatus.SUCCEEDED and r.attempts == 1 for r in result.trace)
        assert result.flow_name == "linear"

    def test_node_logs_carry_trace_fields(self, registry, engine_factory, linear_document, caplog):
        registry.register("upper", lambda args, inputs, ctx: inputs["text"].upper())

        with caplog.at_level(logging.INFO, logger="agent_graph.engine.executor"):
            result = run_plan(engine_factory(), linear_document,
                              {"trace_id": "trace-42", "inputs": {"text": "hi"}})

        succeeded = [r for r in caplog.records if r.getMessage().startswith("Node succeeded")]
        assert [r.node_id for r in succeeded] == ["upper", "exclaim"]
        assert all(r.trace_id == "trace-42" and r.run_id == result.run_id for r in succeeded)
        assert all(r.flow == "linear" for r in succeeded)

    def test_execute_entrypoint(self, registry, engine_factory, linear_document):
        registry.register("upper", lambda args, inputs, ctx: inputs["text"].upper())

        result = execute(linear_document, {"inputs": {"text": "ok"}, "user_id": "u1"},
                         engine=engine_factory())

        assert result.is_success
        assert result.output == {"text": "OK!"}
        result.raise_for_error()

    def test_invalid_document_never_runs(self, engine_factory):
        with pytest.raises(FlowValidationError) as exc_info:
            execute({"nodes": [decl("Bad")]}, {}, engine=engine_factory())

        assert exc_info.value.errors[0].code == "invalid_node_id"

    def test_missing_input_skips_and_fails_without_output(self, registry, engine_factory, linear_document):
        upper = Mock(return_value="X")
        registry.register("upper", upper)

        result = run_plan(engine_factory(), linear_document, {"inputs": {}})

        assert result.status == RunStatus.FAILED
        assert result.error.error_type == "NoOutputError"
        assert result.node_status == {"upper": NodeStatus.SKIPPED, "exclaim": NodeStatus.SKIPPED}
        upper.assert_not_called()
        with pytest.raises(RunFailedError):
            result.raise_for_error()

    def test_to_dict(self, registry, engine_factory, linear_document):
        registry.register("upper", lambda args, inputs, ctx: inputs["text"].upper())

        data = run_plan(engine_factory(), linear_document, {"inputs": {"text": "a"}}).to_dict()

        assert data["status"] == "succeeded"
        assert data["output"] == {"text": "A!"}
        assert data["trace"][0]["status"] == "succeeded"
        assert data["node_status"] == {"upper": "succeeded", "exclaim": "succeeded"}


class TestEndToEnd:
    """End-to-end behaviour of the engine."""

    def test_independent_nodes_run_concurrently(self, registry, engine_factory):
        """fetch_a and fetch_b overlap; combine waits for both."""
        events = []

        async def fetch(args, inputs, ctx):
            events.append("start")
            await asyncio.sleep(0.05)
            events.append("end")
            return args["value"]

        async def combine(args, inputs, ctx):
            events.append("combine")
            return inputs["a"] + inputs["b"]

        registry.register("fetch", fetch)
        registry.register("combine", combine)

        result = run_plan(engine_factory(), fan_in_document())

        assert result.status == RunStatus.SUCCEEDED
        assert events == ["start", "start", "end", "end", "combine"]
        assert result.output == {"total": 3}

    def test_retries_after_timeouts(self, registry, engine_factory):
        """Three timed-out attempts separated by the backoff."""
        starts = []

        async def call(args, inputs, ctx):
            starts.append(time.monotonic())
            await asyncio.sleep(10)

        registry.register("call", call)
        document = {
            "nodes": [decl("call", outputs=["out"],
                           runtime={"retries": 3, "timeout": "100ms", "retry_backoff": "50ms"})],
            "edges": [{"from": "call.out", "to": "_output.out"}],
        }

        result = run_plan(engine_factory(), document)

        assert len(starts) == 3
        gaps = [later - earlier for earlier, later in zip(starts, starts[1:])]
        assert all(gap >= 0.14 for gap in gaps), gaps
        assert result.status == RunStatus.FAILED
        assert result.error.error_type == "NodeTimeoutError"
        assert result.error.node_id == "call"
        assert result.error.attempts == 3
        assert result.record("call").status == NodeStatus.FAILED

    def test_backoff_policy_override(self, registry, engine_factory):
        async def call(args, inputs, ctx):
            raise ConnectionError("provider down")

        registry.register("call", call)
        backoff = Mock(return_value=0)
        document = {
            "nodes": [decl("call", outputs=["out"], runtime={"retries": 3, "retry_backoff": "50ms"})],
            "edges": [{"from": "call.out", "to": "_output.out"}],
        }

        result = run_plan(engine_factory(backoff=backoff), document)

        assert result.error.attempts == 3
        assert [c.args[0] for c in backoff.call_args_list] == [1, 2]
        assert all(c.args[1] == pytest.approx(0.05) for c in backoff.call_args_list)

    def test_error_port_routes_to_fallback(self, registry, engine_factory):
        """The error value reaches fallback and the run succeeds."""
        attempts = []

        async def explode(args, inputs, ctx):
            attempts.append(1)
            raise RuntimeError("boom")

        registry.register("explode", explode)
        registry.register("recover", lambda args, inputs, ctx: f"recovered from {inputs['err']['error_type']}")
        document = {
            "nodes": [
                decl("risky", "explode", outputs=[("result", "string")],
                     error_port={"name": "error", "type": "object"}, runtime={"retries": 1}),
                decl("fallback", "recover", inputs=[("err", "object")], outputs=[("answer", "string")]),
            ],
            "edges": [
                {"from": "risky.result", "to": "_output.answer"},
                {"from": "risky.error", "to": "fallback.err"},
                {"from": "fallback.answer", "to": "_output.answer"},
            ],
        }

        result = run_plan(engine_factory(), document)

        assert result.status == RunStatus.SUCCEEDED
        assert result.error is None
        assert len(attempts) == 1
        assert "risky" not in result.outputs
        assert result.outputs["fallback"] == "recovered from NodeInvocationError"
        assert result.output == {"answer": "recovered from NodeInvocationError"}
        assert result.node_status["risky"] == NodeStatus.ROUTED
        assert "boom" in result.record("risky").error.message

    def test_false_condition_skips_node(self, registry, engine_factory):
        """Score 0.3 fails 'score > 0.7'; approve never runs."""
        approve = Mock(return_value="approved")
        notify = Mock(return_value=True)
        registry.register("grade", lambda args, inputs, ctx: 0.3)
        registry.register("approve", approve)
        registry.register("notify", notify)
        document = {
            "nodes": [
                decl("grade", outputs=[("score", "number")]),
                decl("approve", inputs=[("score", "number")], outputs=[("verdict", "string")]),
                decl("notify", inputs=[("verdict", "string")], outputs=[("sent", "boolean")]),
            ],
            "edges": [
                {"from": "grade.score", "to": "approve.score", "condition": "score > 0.7"},
                {"from": "approve.verdict", "to": "notify.verdict"},
                {"from": "notify.sent", "to": "_output.sent"},
                {"from": "grade.score", "to": "_output.score"},
            ],
        }

        result = run_plan(engine_factory(), document)

        assert result.status == RunStatus.SUCCEEDED
        assert result.error is None
        assert result.output == {"score": 0.3}
        assert result.node_status["approve"] == NodeStatus.SKIPPED
        assert result.node_status["notify"] == NodeStatus.SKIPPED
        assert "approve" not in result.outputs
        approve.assert_not_called()
        notify.assert_not_called()

    def test_session_state_across_runs(self, registry, engine_factory):
        """History kept per session id."""
        def remember(inputs, context, state):
            history = state.get([]) + [inputs["message"]]
            state.set(history)
            return history

        document = {
            "nodes": [{
                "id": "memory",
                "inputs": [{"name": "message", "type": "string"}],
                "outputs": [{"name": "history", "type": "array"}],
                "transform": {"kind": "code", "body": "remember"},
                "state": {"scope": "session", "key_template": "conversation_{session_id}"},
            }],
            "edges": [
                {"from": "_input.message", "to": "memory.message"},
                {"from": "memory.history", "to": "_output.history"},
            ],
        }
        engine = engine_factory(dispatcher=OperationDispatcher(
            registry=registry, code_functions={"remember": remember},
        ))

        first = run_plan(engine, document, {"session_id": "s1", "inputs": {"message": "hi"}})
        second = run_plan(engine, document, {"session_id": "s1", "inputs": {"message": "again"}})
        other = run_plan(engine, document, {"session_id": "s2", "inputs": {"message": "hello"}})

        assert first.output == {"history": ["hi"]}
        assert second.output == {"history": ["hi", "again"]}
        assert other.output == {"history": ["hello"]}

    def test_session_state_survives_separate_execute_calls(self):
        document = {
            "nodes": [{
                "id": "memory",
                "inputs": [{"name": "message", "type": "string"}],
                "outputs": [{"name": "history", "type": "array"}],
                "transform": {"kind": "code", "body": (
                    "def run(inputs, context, state):\n"
                    "    history = state.get([]) + [inputs['message']]\n"
                    "    state.set(history)\n"
                    "    return history\n"
                )},
                "state": {"scope": "session", "key_template": "conversation_{session_id}"},
            }],
            "edges": [
                {"from": "_input.message", "to": "memory.message"},
                {"from": "memory.history", "to": "_output.history"},
            ],
        }

        execute(document, {"session_id": "s1", "inputs": {"message": "hi"}})
        second = execute(document, {"session_id": "s1", "inputs": {"message": "again"}})
        other = execute(document, {"session_id": "s2", "inputs": {"message": "hello"}})

        assert second.output == {"history": ["hi", "again"]}
        assert other.output == {"history": ["hello"]}

    def test_request_state_discarded_between_runs(self, registry, engine_factory):
        def remember(inputs, context, state):
            history = state.get([]) + [inputs["message"]]
            state.set(history)
            return history

        document = {
            "nodes": [{
                "id": "memory",
                "inputs": [{"name": "message", "type": "string"}],
                "outputs": [{"name": "history", "type": "array"}],
                "transform": {"kind": "code", "body": "remember"},
            }],
            "edges": [
                {"from": "_input.message", "to": "memory.message"},
                {"from": "memory.history", "to": "_output.history"},
            ],
        }
        engine = engine_factory(dispatcher=OperationDispatcher(
            registry=registry, code_functions={"remember": remember},
        ))

        first = run_plan(engine, document, {"session_id": "s1", "inputs": {"message": "hi"}})
        second = run_plan(engine, document, {"session_id": "s1", "inputs": {"message": "again"}})

        assert first.output == {"history": ["hi"]}
        assert second.output == {"history": ["again"]}

    def test_outputs_are_deterministic(self, registry, engine_factory):
        async def fetch(args, inputs, ctx):
            await asyncio.sleep(0)
            return 2

        registry.register("fetch", fetch)
        registry.register("combine", lambda args, inputs, ctx: inputs["a"] * inputs["b"])
        engine = engine_factory()

        runs = [run_plan(engine, fan_in_document()) for _ in range(3)]

        assert all(r.outputs == runs[0].outputs for r in runs)
        assert runs[0].outputs == {"fetch_a": 2, "fetch_b": 2, "combine": 4}


class TestFailures:
    """Test escalation, output validation and edge expressions."""

    def test_unrouted_failure_fails_run_and_cancels_siblings(self, registry, engine_factory):
        after = Mock(return_value="never")

        async def boom(args, inputs, ctx):
            raise ValueError("bad input")

        async def slow(args, inputs, ctx):
            await asyncio.sleep(5)
            return "late"

        registry.register("boom", boom)
        registry.register("slow", slow)
        registry.register("after", after)
        document = {
            "nodes": [
                decl("boom", outputs=["out"]),
                decl("slow", outputs=["out"]),
                decl("after", inputs=["text"], outputs=["out"]),
            ],
            "edges": [
                {"from": "boom.out", "to": "after.text"},
                {"from": "after.out", "to": "_output.a"},
                {"from": "slow.out", "to": "_output.b"},
            ],
        }

        start = time.monotonic()
        result = run_plan(engine_factory(), document)

        assert time.monotonic() - start < 2
        assert result.status == RunStatus.FAILED
        assert result.error.node_id == "boom"
        assert result.error.attempts == 1
        assert result.error.error_type == "NodeInvocationError"
        assert "bad input" in result.error.message
        assert result.node_status["slow"] == NodeStatus.CANCELLED
        assert result.record("slow").error.error_type == "NodeCancelledError"
        assert result.node_status["after"] == NodeStatus.PENDING
        after.assert_not_called()

    def test_output_type_violation_is_retried(self, registry, engine_factory):
        calls = []

        def flaky(args, inputs, ctx):
            calls.append(1)
            return "oops" if len(calls) == 1 else 5

        registry.register("flaky", flaky)
        document = {
            "nodes": [decl("flaky", outputs=[("count", "number")], runtime={"retries": 2})],
            "edges": [{"from": "flaky.count", "to": "_output.count"}],
        }

        result = run_plan(engine_factory(), document)

        assert result.status == RunStatus.SUCCEEDED
        assert result.output == {"count": 5}
        assert result.record("flaky").attempts == 2

    def test_validation_schema_violation(self, registry, engine_factory):
        registry.register("profile", lambda args, inputs, ctx: {"age": 3})
        document = {
            "nodes": [decl("profile", outputs=[{
                "name": "profile",
                "type": "object",
                "schema": {"type": "object", "required": ["name"]},
            }])],
            "edges": [{"from": "profile.profile", "to": "_output.profile"}],
        }

        result = run_plan(engine_factory(), document)

        assert result.status == RunStatus.FAILED
        assert result.error.error_type == "OutputSchemaError"
        assert "name" in result.error.message

    def test_tuple_output_checked_as_array(self, registry, engine_factory):
        registry.register("scores", lambda args, inputs, ctx: (0.5, (1, 2)))
        document = {
            "nodes": [decl("scores", outputs=[{
                "name": "scores",
                "type": "array",
                "schema": {"type": "array", "prefixItems": [{"type": "number"}, {"type": "array"}]},
            }])],
            "edges": [{"from": "scores.scores", "to": "_output.scores"}],
        }

        result = run_plan(engine_factory(), document)

        assert result.status == RunStatus.SUCCEEDED
        assert result.output == {"scores": [0.5, (1, 2)]}

    def test_multiple_output_ports(self, registry, engine_factory):
        registry.register("classify", lambda args, inputs, ctx: {"label": "spam", "confidence": 0.9})
        document = {
            "nodes": [decl("classify", outputs=[("label", "string"), ("confidence", "number")])],
            "edges": [
                {"from": "classify.label", "to": "_output.label"},
                {"from": "classify.confidence", "to": "_output.confidence"},
            ],
        }

        result = run_plan(engine_factory(), document)

        assert result.output == {"label": "spam", "confidence": 0.9}

    def test_missing_output_port_value(self, registry, engine_factory):
        registry.register("classify", lambda args, inputs, ctx: {"label": "spam"})
        document = {
            "nodes": [decl("classify", outputs=[("label", "string"), ("confidence", "number")])],
            "edges": [{"from": "classify.label", "to": "_output.label"}],
        }

        result = run_plan(engine_factory(), document)

        assert result.status == RunStatus.FAILED
        assert "confidence" in result.error.message

    def test_error_port_of_string_type_carries_message(self, registry, engine_factory):
        def fail(args, inputs, ctx):
            raise RuntimeError("upstream 503")

        registry.register("risky", fail)
        document = {
            "nodes": [decl("risky", outputs=["out"], error_port={"name": "error", "type": "string"})],
            "edges": [
                {"from": "risky.out", "to": "_output.out"},
                {"from": "risky.error", "to": "_output.error"},
            ],
        }

        result = run_plan(engine_factory(), document)

        assert result.status == RunStatus.SUCCEEDED
        assert "upstream 503" in result.output["error"]
        assert "out" not in result.output

    def test_failed_edge_expression_escalates_target(self, registry, engine_factory):
        target = Mock(return_value="x")
        registry.register("count", lambda args, inputs, ctx: 1)
        registry.register("show", target)
        document = {
            "nodes": [
                decl("count", outputs=[("n", "number")]),
                decl("show", inputs=[("n", "number")], outputs=["out"]),
            ],
            "edges": [
                {"from": "count.n", "to": "show.n", "condition": "missing_name > 1"},
                {"from": "show.out", "to": "_output.out"},
            ],
        }

        result = run_plan(engine_factory(), document)

        assert result.status == RunStatus.FAILED
        assert result.error.node_id == "show"
        assert result.error.attempts == 0
        assert "missing_name" in result.error.message
        assert result.error.details["cause"].startswith("ExpressionError")
        target.assert_not_called()


class TestEdgeValues:
    """Test coercion and inline transforms along edges."""

    def count_then_show(self, edge_extra=None):
        edge = {"from": "count.n", "to": "show.text"}
        edge.update(edge_extra or {})
        return {
            "nodes": [
                decl("count", outputs=[("n", "number")]),
                {
                    "id": "show",
                    "inputs": [{"name": "text", "type": "string"}],
                    "outputs": [{"name": "text", "type": "string"}],
                    "transform": {"kind": "code", "body": "inputs['text'] + '?'"},
                },
            ],
            "edges": [edge, {"from": "show.text", "to": "_output.text"}],
        }

    def test_number_coerced_to_string(self, registry, engine_factory):
        registry.register("count", lambda args, inputs, ctx: 42)

        result = run_plan(engine_factory(), self.count_then_show())

        assert result.output == {"text": "42?"}

    def test_inline_transform(self, registry, engine_factory):
        registry.register("count", lambda args, inputs, ctx: 42)

        result = run_plan(engine_factory(), self.count_then_show({"transform": "str(value * 2)"}))

        assert result.output == {"text": "84?"}

    def test_condition_sees_context(self, registry, engine_factory):
        registry.register("count", lambda args, inputs, ctx: 42)
        document = self.count_then_show({"condition": "context['tenant'] == 'acme'"})

        kept = run_plan(engine_factory(), document, {"tenant": "acme"})
        dropped = run_plan(engine_factory(), document, {"tenant": "other"})

        assert kept.output == {"text": "42?"}
        assert dropped.node_status["show"] == NodeStatus.SKIPPED

    def test_nodes_cannot_rewrite_context(self, registry, engine_factory):
        def tamper(args, inputs, ctx):
            ctx.raw_fields["tenant"] = "evil"
            return "done"

        registry.register("tamper", tamper)
        registry.register("read", lambda args, inputs, ctx: ctx.get("tenant"))
        document = {
            "nodes": [
                decl("tamper", outputs=["result"], error_port={"name": "error", "type": "string"}),
                decl("read", inputs=["err"], outputs=["tenant"]),
            ],
            "edges": [
                {"from": "tamper.error", "to": "read.err"},
                {"from": "read.tenant", "to": "_output.tenant"},
            ],
        }

        result = run_plan(engine_factory(), document, {"tenant": "acme"})

        assert result.output == {"tenant": "acme"}
        assert result.node_status["tamper"] == NodeStatus.ROUTED
        assert "TypeError" in result.record("tamper").error.message

    def test_first_delivered_edge_wins(self, registry, engine_factory):
        registry.register("first", lambda args, inputs, ctx: "one")
        registry.register("second", lambda args, inputs, ctx: "two")
        registry.register("pick", lambda args, inputs, ctx: inputs["choice"])
        document = {
            "nodes": [
                decl("first", outputs=["out"]),
                decl("second", outputs=["out"]),
                decl("pick", inputs=["choice"], outputs=["out"]),
            ],
            "edges": [
                {"from": "second.out", "to": "pick.choice", "condition": "len(out) == 3"},
                {"from": "first.out", "to": "pick.choice", "condition": "len(out) == 3"},
                {"from": "pick.out", "to": "_output.out"},
            ],
        }

        result = run_plan(engine_factory(), document)

        assert result.output == {"out": "two"}


class TestRunControl:
    """Test deadlines, aborts, context requirements and concurrency."""

    def test_deadline_preempts_node_timeout(self, registry, engine_factory):
        async def slow(args, inputs, ctx):
            await asyncio.sleep(5)

        registry.register("slow", slow)
        document = {
            "nodes": [decl("slow", outputs=["out"], runtime={"timeout": 10})],
            "edges": [{"from": "slow.out", "to": "_output.out"}],
        }

        start = time.monotonic()
        result = run_plan(engine_factory(), document, deadline=0.1)

        assert time.monotonic() - start < 2
        assert result.status == RunStatus.ABORTED
        assert result.error.error_type == "DeadlineExceeded"
        assert result.node_status["slow"] == NodeStatus.CANCELLED

    def test_deadline_from_settings(self, registry, engine_factory):
        async def slow(args, inputs, ctx):
            await asyncio.sleep(5)

        registry.register("slow", slow)
        document = {"nodes": [decl("slow", outputs=["out"])]}
        engine = engine_factory(settings=Settings(run_deadline_s=0.1, default_retry_backoff_s=0))

        result = run_plan(engine, document)

        assert result.status == RunStatus.ABORTED

    def test_abort_event(self, registry, engine_factory):
        engine = engine_factory()
        plan = compile_flow({
            "nodes": [decl("slow", outputs=["out"])],
            "edges": [{"from": "slow.out", "to": "_output.out"}],
        })

        async def main():
            abort = asyncio.Event()

            async def slow(args, inputs, ctx):
                abort.set()
                await asyncio.sleep(5)

            registry.register("slow", slow)
            return await engine.run(plan, new_context({}), {}, abort_event=abort)

        result = asyncio.run(main())

        assert result.status == RunStatus.ABORTED
        assert result.error.error_type == "RunAborted"
        assert result.node_status["slow"] == NodeStatus.CANCELLED

    def test_missing_context_fields_fail_before_any_node(self, registry, engine_factory):
        handler = Mock(return_value="x")
        registry.register("greet", handler)
        document = {
            "context": {"requires": ["user_id"]},
            "nodes": [decl("greet", outputs=["out"], runtime={"required_context_fields": ["user_id"]})],
            "edges": [{"from": "greet.out", "to": "_output.out"}],
        }

        result = run_plan(engine_factory(), document, {"session_id": "s1"})

        assert result.status == RunStatus.FAILED
        assert result.error.error_type == "ContextRequirementError"
        assert "user_id" in result.error.message
        assert result.trace == []
        handler.assert_not_called()

    def test_global_concurrency_limit(self, registry, engine_factory):
        active = [0]
        peaks = []

        async def work(args, inputs, ctx):
            active[0] += 1
            peaks.append(active[0])
            await asyncio.sleep(0.02)
            active[0] -= 1
            return 1

        registry.register("work", work)
        document = {
            "nodes": [decl(f"w{i}", "work", outputs=[("n", "number")]) for i in range(3)],
            "edges": [{"from": f"w{i}.n", "to": f"_output.n{i}"} for i in range(3)],
        }

        limited = run_plan(engine_factory(max_concurrency=1), document)
        assert limited.is_success
        assert max(peaks) == 1

        peaks.clear()
        unlimited = run_plan(engine_factory(), document)
        assert unlimited.output == {"n0": 1, "n1": 1, "n2": 1}
        assert max(peaks) == 3

    def test_node_concurrency_cap(self, registry, engine_factory):
        active = set()
        snapshots = []

        async def work(args, inputs, ctx):
            active.add(args["name"])
            snapshots.append(frozenset(active))
            await asyncio.sleep(0.02)
            active.discard(args["name"])
            return 1

        registry.register("work", work)
        document = {
            "nodes": [
                decl("a", "work", outputs=[("n", "number")], runtime={"max_concurrency": 1}),
                decl("b", "work", outputs=[("n", "number")]),
                decl("c", "work", outputs=[("n", "number")]),
            ],
        }
        for node in document["nodes"]:
            node["transform"]["args"] = {"name": node["id"]}

        result = run_plan(engine_factory(), document)

        assert result.is_success
        assert all(s == {"a"} for s in snapshots if "a" in s)
        assert frozenset({"b", "c"}) in snapshots


class TestPromptNodes:
    """Test prompt transforms through the engine."""

    def test_prompt_node_with_static_fallback(self, registry, engine_factory):
        model = Mock()
        model.generate.return_value = "not json"
        dispatcher = OperationDispatcher(registry=registry, models={"main": model})
        document = {
            "nodes": [{
                "id": "answer",
                "inputs": [{"name": "question", "type": "string"}],
                "outputs": [{"name": "reply", "type": "object"}],
                "transform": {
                    "kind": "prompt",
                    "template": "Answer for $user_id: $question",
                    "output_schema": {"type": "object", "required": ["answer"]},
                    "fallback": {"policy": "static", "response": {"answer": "sorry"}},
                },
            }],
            "edges": [
                {"from": "_input.question", "to": "answer.question"},
                {"from": "answer.reply", "to": "_output.reply"},
            ],
        }

        result = run_plan(
            engine_factory(dispatcher=dispatcher),
            document,
            {"user_id": "u7", "inputs": {"question": "why?"}},
        )

        assert result.output == {"reply": {"answer": "sorry"}}
        model.generate.assert_called_once_with(None, "Answer for u7: why?",
                                               {"type": "object", "required": ["answer"]})

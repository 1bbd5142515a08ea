"""Tests for step spans, child spans, logs and metrics."""

import subprocess
import sys
from dataclasses import replace

import pytest

from stepotel.telemetry.context import ContextCarrier, TraceContext
from stepotel.telemetry.tracer import (
    STEP_ATTRS_ENV,
    STEP_NAME_ENV,
    STEP_PARENT_SPAN_ID_ENV,
    STEP_SPAN_ID_ENV,
    Tracer,
    exit_code_of,
    is_failure,
)

INBOUND_TRACE_ID = "0af7651916cd43dd8448eb211c80319c"
INBOUND_SPAN_ID = "b7ad6b7169203331"
INBOUND_TRACEPARENT = f"00-{INBOUND_TRACE_ID}-{INBOUND_SPAN_ID}-01"

OK, ERROR = 1, 2


def _attr_pairs(otlp_attributes):
    return [(a["key"], a["value"]["stringValue"]) for a in otlp_attributes]


class _Boom(Exception):
    pass


def _fail():
    raise _Boom("failed")


class TestIsFailure:
    @pytest.mark.parametrize(
        "result, expected",
        [
            (None, False),
            ("output", False),
            (0, False),
            (5, False),
            (-1, False),
            (False, False),
            (subprocess.CompletedProcess(["x"], 0), False),
            (subprocess.CompletedProcess(["x"], 2), True),
        ],
    )
    def test_results(self, result, expected):
        assert is_failure(result) is expected

    def test_exit_code_of(self):
        assert exit_code_of(SystemExit(None)) == 0
        assert exit_code_of(SystemExit(3)) == 3
        assert exit_code_of(SystemExit("fatal")) == 1
        assert exit_code_of(ValueError()) == 1


class TestStartStep:
    def test_step_context_nests_under_inbound(self, tracer, environ):
        step = tracer.start_step("build", "component=api", "expr=a=b")

        assert step.name == "step-build"
        assert step.context.trace_id == INBOUND_TRACE_ID
        assert step.context.parent_span_id == INBOUND_SPAN_ID
        assert step.context.span_id != INBOUND_SPAN_ID
        assert step.context.trace_flags == "01"
        assert step.attributes.to_pairs() == [
            "step.name=step-build",
            "component=api",
            "expr=a=b",
        ]
        assert step.resource.step_name == "step-build"
        assert step.resource.service_name == "sbomer"
        assert tracer.current_step is step

    def test_publishes_step_context(self, tracer, environ):
        step = tracer.start_step("build", "k=v")

        assert environ["TRACEPARENT"] == step.context.to_traceparent()
        assert tracer.traceparent() == step.context.to_traceparent()
        assert environ[STEP_NAME_ENV] == "step-build"
        assert environ[STEP_SPAN_ID_ENV] == step.context.span_id
        assert environ[STEP_PARENT_SPAN_ID_ENV] == INBOUND_SPAN_ID
        assert environ[STEP_ATTRS_ENV] == "step.name=step-build\nk=v"

    def test_missing_inbound_context_starts_new_trace(self, settings, exporter):
        environ = {"TRACEPARENT": "not-a-traceparent"}
        tracer = Tracer(settings, exporter, ContextCarrier(environ))

        step = tracer.start_step("build")

        assert len(step.context.trace_id) == 32
        assert step.context.parent_span_id == ""
        assert step.context.trace_flags == "01"
        assert TraceContext.parse(environ["TRACEPARENT"]).span_id == step.context.span_id

    def test_does_not_export_anything(self, tracer, exporter):
        tracer.start_step("build")
        assert exporter.sent == []


class TestEndStep:
    @pytest.mark.parametrize("exit_code, status", [(0, OK), (None, OK), (1, ERROR), (130, ERROR)])
    def test_status_from_exit_code(self, tracer, exporter, exit_code, status):
        tracer.start_step("build")
        tracer.end_step(exit_code)

        [span] = exporter.spans()
        assert span["status"]["code"] == status

    def test_exports_step_span_and_waits(self, tracer, exporter):
        step = tracer.start_step("build", "k=v")
        tracer.end_step(0)

        [payload] = exporter.payloads("v1/traces")
        resource = payload["resourceSpans"][0]["resource"]
        assert ("step.name", "step-build") in _attr_pairs(resource["attributes"])
        [span] = exporter.spans()
        assert span["traceId"] == INBOUND_TRACE_ID
        assert span["spanId"] == step.context.span_id
        assert span["parentSpanId"] == INBOUND_SPAN_ID
        assert span["name"] == "step-build"
        assert span["kind"] == 1
        assert int(span["endTimeUnixNano"]) >= int(span["startTimeUnixNano"])
        assert _attr_pairs(span["attributes"]) == [("step.name", "step-build"), ("k", "v")]
        assert exporter.waits == 1
        assert tracer.current_step is None

    def test_restores_inbound_environment(self, tracer, environ):
        tracer.start_step("build")
        tracer.end_step(0)

        assert environ == {"TRACEPARENT": INBOUND_TRACEPARENT}

    def test_without_step_is_noop(self, tracer, exporter, capture_logs):
        tracer.end_step(0)
        assert exporter.sent == []
        assert "without an open step" in capture_logs.getvalue()

    def test_drain_on_exit_waits_for_all(self, settings, exporter, carrier):
        tracer = Tracer(replace(settings, drain_on_exit=True), exporter, carrier)
        calls = []
        exporter.wait_all = lambda: calls.append("all")
        exporter.wait_last = lambda: calls.append("last")

        tracer.start_step("build")
        tracer.end_step(0)

        assert calls == ["all"]


class TestNestedSteps:
    def test_inner_step_restores_outer(self, tracer, environ, exporter):
        outer = tracer.start_step("outer")
        inner = tracer.start_step("inner")

        assert inner.context.parent_span_id == outer.context.span_id
        tracer.end_step(0)
        assert tracer.current_step is outer
        assert environ["TRACEPARENT"] == outer.context.to_traceparent()
        assert environ[STEP_NAME_ENV] == "step-outer"

        tracer.end_step(0)
        names = [span["name"] for span in exporter.spans()]
        assert names == ["step-inner", "step-outer"]

    def test_independent_tracers_do_not_share_state(self, settings, exporter):
        first = Tracer(settings, exporter, ContextCarrier({"TRACEPARENT": INBOUND_TRACEPARENT}))
        second = Tracer(settings, exporter, ContextCarrier({}))

        first.start_step("a")
        assert second.current_step is None


class TestStepContextManager:
    def test_success(self, tracer, exporter):
        with tracer.step("build"):
            pass
        assert exporter.spans()[0]["status"]["code"] == OK

    def test_exception_marks_error_and_propagates(self, tracer, exporter):
        with pytest.raises(_Boom):
            with tracer.step("build"):
                _fail()
        assert exporter.spans()[0]["status"]["code"] == ERROR

    def test_system_exit_zero_is_ok(self, tracer, exporter):
        with pytest.raises(SystemExit):
            with tracer.step("build"):
                sys.exit(0)
        assert exporter.spans()[0]["status"]["code"] == OK


class TestTrace:
    def test_returns_result_and_reports_ok(self, tracer, exporter):
        step = tracer.start_step("build")

        assert tracer.trace("compile", lambda x, y=0: x + y, 2, y=3) == 5

        [span] = exporter.spans()
        assert span["name"] == "compile"
        assert span["status"]["code"] == OK
        assert span["traceId"] == step.context.trace_id
        assert span["parentSpanId"] == step.context.span_id
        assert span["spanId"] != step.context.span_id
        assert span["attributes"] == step.attributes.to_otlp()

    def test_exception_reports_error_and_is_reraised(self, tracer, exporter):
        tracer.start_step("build")

        with pytest.raises(_Boom):
            tracer.trace("link", _fail)

        [span] = exporter.spans()
        assert span["status"]["code"] == ERROR

    def test_failed_process_reports_error_and_is_returned(self, tracer, exporter):
        tracer.start_step("build")
        failed = subprocess.CompletedProcess(["ld"], 2)

        assert tracer.trace("link", lambda: failed) is failed
        assert exporter.spans()[0]["status"]["code"] == ERROR

    def test_integer_result_is_not_an_exit_code(self, tracer, exporter):
        tracer.start_step("build")

        assert tracer.trace("count", lambda: 2) == 2
        assert exporter.spans()[0]["status"]["code"] == OK

    def test_operation_sees_child_context(self, tracer, environ):
        step = tracer.start_step("build")
        seen = []

        tracer.trace("compile", lambda: seen.append(environ["TRACEPARENT"]))

        child = TraceContext.parse(seen[0])
        assert child.trace_id == step.context.trace_id
        assert child.span_id != step.context.span_id
        assert environ["TRACEPARENT"] == step.context.to_traceparent()

    def test_nested_traces_chain_parentage(self, tracer, exporter):
        step = tracer.start_step("build")

        tracer.trace("outer", lambda: tracer.trace("inner", lambda: None))

        inner, outer = exporter.spans()
        assert outer["parentSpanId"] == step.context.span_id
        assert inner["parentSpanId"] == outer["spanId"]

    def test_export_failure_does_not_change_outcome(self, tracer, exporter):
        tracer.start_step("build")

        def broken_send(path, payload):
            raise RuntimeError("can't start new thread")

        exporter.send = broken_send

        assert tracer.trace("compile", lambda: "done") == "done"
        with pytest.raises(_Boom):
            tracer.trace("link", _fail)

    def test_without_step_uses_inbound_context(self, tracer, exporter):
        tracer.trace("standalone", lambda: None)

        [span] = exporter.spans()
        assert span["traceId"] == INBOUND_TRACE_ID
        assert span["parentSpanId"] == INBOUND_SPAN_ID
        assert span["attributes"] == []

    def test_without_any_context_nothing_is_exported(self, settings, exporter):
        tracer = Tracer(settings, exporter, ContextCarrier({}))
        assert tracer.trace("orphan", lambda: 7) == 7
        assert exporter.sent == []


class TestSpanContextManager:
    def test_block_span(self, tracer, exporter):
        tracer.start_step("build")

        with tracer.span("package") as scope:
            scope.fail()

        [span] = exporter.spans()
        assert span["name"] == "package"
        assert span["status"]["code"] == ERROR

    def test_exception_in_block(self, tracer, exporter):
        tracer.start_step("build")

        with pytest.raises(_Boom):
            with tracer.span("package"):
                _fail()

        assert exporter.spans()[0]["status"]["code"] == ERROR


def test_build_compile_link_scenario(tracer, exporter):
    step = tracer.start_step("build")
    tracer.trace("compile", lambda: 0)
    with pytest.raises(_Boom):
        tracer.trace("link", _fail)
    tracer.end_step(1)

    spans = {span["name"]: span for span in exporter.spans()}
    assert list(spans) == ["compile", "link", "step-build"]
    assert {span["traceId"] for span in spans.values()} == {step.context.trace_id}
    assert spans["compile"]["parentSpanId"] == step.context.span_id
    assert spans["link"]["parentSpanId"] == step.context.span_id
    assert spans["compile"]["status"]["code"] == OK
    assert spans["link"]["status"]["code"] == ERROR
    assert spans["step-build"]["status"]["code"] == ERROR


class TestLogAndMetric:
    def test_log_correlates_to_step_span(self, tracer, exporter):
        step = tracer.start_step("build", "k=v")

        with tracer.span("compile"):
            tracer.log("compiling")

        [payload] = exporter.payloads("v1/logs")
        [record] = payload["resourceLogs"][0]["scopeLogs"][0]["logRecords"]
        assert record["body"] == {"stringValue": "compiling"}
        assert record["traceId"] == step.context.trace_id
        assert record["spanId"] == step.context.span_id
        assert record["attributes"] == step.attributes.to_otlp()

    def test_metric_datapoint(self, tracer, exporter):
        step = tracer.start_step("build")

        tracer.metric("sbomer.taskrun.build.artifacts", 5)

        [payload] = exporter.payloads("v1/metrics")
        [metric] = payload["resourceMetrics"][0]["scopeMetrics"][0]["metrics"]
        assert metric["sum"]["aggregationTemporality"] == 2
        assert metric["sum"]["isMonotonic"] is True
        [point] = metric["sum"]["dataPoints"]
        assert point["asInt"] == "5"
        assert point["attributes"] == step.attributes.to_otlp()
        [exemplar] = point["exemplars"]
        assert exemplar["traceId"] == step.context.trace_id
        assert exemplar["spanId"] == step.context.span_id
        assert exemplar["asInt"] == "5"

    def test_invalid_metric_value_is_dropped(self, tracer, exporter):
        tracer.start_step("build")
        tracer.metric("m", "five")
        assert exporter.payloads("v1/metrics") == []

    def test_outside_step_is_dropped(self, tracer, exporter, capture_logs):
        tracer.log("orphan")
        tracer.metric("m", 1)
        assert exporter.sent == []
        assert "outside of a step" in capture_logs.getvalue()


class TestResumeStep:
    def test_resumes_published_step(self, settings, exporter, environ):
        parent = Tracer(settings, exporter, ContextCarrier(environ))
        step = parent.start_step("build", "k=v")

        child_environ = dict(environ)
        child = Tracer(settings, exporter, ContextCarrier(child_environ))
        resumed = child.resume_step()

        assert resumed.name == "step-build"
        assert resumed.context == step.context
        assert resumed.attributes == step.attributes
        assert not resumed.owned

    def test_child_process_spans_nest_under_current_span(self, settings, exporter, environ):
        parent = Tracer(settings, exporter, ContextCarrier(environ))
        step = parent.start_step("build")

        def child_process():
            child = Tracer(settings, exporter, ContextCarrier(dict(environ)))
            child.resume_step()
            child.trace("nested", lambda: None)
            child.log("from child")

        parent.trace("script", child_process)

        nested, script = exporter.spans()
        assert script["parentSpanId"] == step.context.span_id
        assert nested["parentSpanId"] == script["spanId"]
        assert _attr_pairs(nested["attributes"]) == [("step.name", "step-build")]
        [log] = exporter.payloads("v1/logs")
        assert log["resourceLogs"][0]["scopeLogs"][0]["logRecords"][0]["spanId"] == (
            step.context.span_id
        )

    def test_nothing_to_resume(self, tracer):
        assert tracer.resume_step() is None
        assert tracer.current_step is None

    def test_end_of_resumed_step_exports_nothing(self, settings, exporter, environ):
        Tracer(settings, exporter, ContextCarrier(environ)).start_step("build")
        child = Tracer(settings, exporter, ContextCarrier(dict(environ)))
        child.resume_step()

        child.end_step(0)

        assert exporter.spans() == []
        assert child.current_step is None

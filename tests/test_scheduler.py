import asyncio

import pytest

from turnloop.api.errors import SchedulerBusyError
from turnloop.config.models import ApprovalMode
from turnloop.core.scheduler import USER_CANCELLED_EXECUTION, USER_DENIED_REASON, ToolScheduler
from turnloop.core.tool_calls import ToolCallRequestInfo, ToolCallStatus
from turnloop.tools.base import (
    EditConfirmationDetails,
    ExecConfirmationDetails,
    McpConfirmationDetails,
    ToolConfirmationDetails,
    ToolConfirmationOutcome,
    ToolConfirmationPayload,
    ToolResult,
)
from turnloop.tools.modifiable import ModifiableTool, ModifyContext
from turnloop.utils.cancellation import CancellationToken

from conftest import FakeTool


def request(name="echo", call_id="c1", args=None):
    return ToolCallRequestInfo(call_id=call_id, name=name, args=args or {}, prompt_id="p1")


class Harness:
    def __init__(self, registry, session, **kwargs):
        self.batches = []
        self.confirmations = []
        self.updates = []
        self.scheduler = ToolScheduler(
            registry,
            session,
            on_all_tool_calls_complete=self.batches.append,
            on_confirmation_required=self.confirmations.append,
            on_tool_calls_update=self.updates.append,
            **kwargs,
        )

    def statuses(self):
        return [c.status for c in self.scheduler.tool_calls]


@pytest.fixture()
def harness(registry, session):
    return Harness(registry, session)


def output_of(call):
    return call.response.response_parts[0]["functionResponse"]["response"]


@pytest.mark.asyncio
async def test_unconfirmed_call_executes_and_completes(harness, registry):
    registry.register_tool(FakeTool("echo", result="hello"))

    await harness.scheduler.schedule(request(args={"x": 1}), CancellationToken())
    await harness.scheduler.drain()

    assert len(harness.batches) == 1
    (call,) = harness.batches[0]
    assert call.status == ToolCallStatus.SUCCESS
    assert output_of(call) == {"output": "hello"}
    assert call.duration_ms is not None
    assert harness.scheduler.tool_calls == []
    assert harness.scheduler.batch_id is None


@pytest.mark.asyncio
async def test_unknown_tool_errors_without_executing(harness):
    await harness.scheduler.schedule(request("missing"), CancellationToken())

    (call,) = harness.batches[0]
    assert call.status == ToolCallStatus.ERROR
    assert output_of(call) == {"error": 'Tool "missing" not found in registry.'}


@pytest.mark.asyncio
async def test_invalid_params_and_tool_failure_become_errors(harness, registry):
    registry.register_tool(FakeTool("strict", invalid="path is required"))
    registry.register_tool(FakeTool("broken", error=OSError("disk full")))

    await harness.scheduler.schedule(
        [request("strict", "c1"), request("broken", "c2")], CancellationToken()
    )
    await harness.scheduler.drain()

    calls = {c.call_id: c for c in harness.batches[0]}
    assert output_of(calls["c1"]) == {"error": "path is required"}
    assert calls["c2"].status == ToolCallStatus.ERROR
    assert output_of(calls["c2"]) == {"error": "disk full"}


@pytest.mark.asyncio
async def test_batch_waits_for_every_approval_before_executing(harness, registry):
    free = FakeTool("free")
    guarded = FakeTool("guarded", confirm=ToolConfirmationDetails(title="Run guarded?"))
    registry.register_tool(free)
    registry.register_tool(guarded)

    await harness.scheduler.schedule([request("free", "c1"), request("guarded", "c2")], CancellationToken())

    assert harness.statuses() == [ToolCallStatus.SCHEDULED, ToolCallStatus.AWAITING_APPROVAL]
    assert free.calls == []
    (pending,) = harness.scheduler.pending_confirmations
    assert harness.confirmations == [pending]
    assert pending.call_id == "c2"
    assert pending.batch_id == harness.scheduler.batch_id

    await harness.scheduler.resolve_confirmation("c2", ToolConfirmationOutcome.PROCEED_ONCE)
    await harness.scheduler.drain()

    assert free.calls == [{}] and guarded.calls == [{}]
    assert [c.status for c in harness.batches[0]] == [ToolCallStatus.SUCCESS, ToolCallStatus.SUCCESS]
    assert harness.batches[0][1].outcome == ToolConfirmationOutcome.PROCEED_ONCE


@pytest.mark.asyncio
async def test_denied_confirmation_cancels_call(harness, registry):
    tool = FakeTool("guarded", confirm=ToolConfirmationDetails(title="Run?"))
    registry.register_tool(tool)

    await harness.scheduler.schedule(request("guarded"), CancellationToken())
    await harness.scheduler.resolve_confirmation("c1", ToolConfirmationOutcome.CANCEL)

    (call,) = harness.batches[0]
    assert call.status == ToolCallStatus.CANCELLED
    assert output_of(call) == {"error": f"[Operation Cancelled] Reason: {USER_DENIED_REASON}"}
    assert tool.calls == []


@pytest.mark.asyncio
async def test_schedule_is_rejected_while_awaiting_approval(harness, registry):
    registry.register_tool(FakeTool("guarded", confirm=ToolConfirmationDetails(title="Run?")))
    await harness.scheduler.schedule(request("guarded"), CancellationToken())
    statuses = harness.statuses()
    pending = [p.call_id for p in harness.scheduler.pending_confirmations]
    batch_id = harness.scheduler.batch_id

    with pytest.raises(SchedulerBusyError):
        await harness.scheduler.schedule(request("guarded", "c2"), CancellationToken())

    assert harness.statuses() == statuses == [ToolCallStatus.AWAITING_APPROVAL]
    assert [p.call_id for p in harness.scheduler.pending_confirmations] == pending == ["c1"]
    assert [c.request.call_id for c in harness.scheduler.tool_calls] == ["c1"]
    assert harness.scheduler.batch_id == batch_id


@pytest.mark.asyncio
async def test_proceed_always_skips_later_confirmations(harness, registry, session):
    registry.register_tool(FakeTool("guarded", confirm=ToolConfirmationDetails(title="Run?")))

    await harness.scheduler.schedule(request("guarded", "c1"), CancellationToken())
    await harness.scheduler.resolve_confirmation("c1", ToolConfirmationOutcome.PROCEED_ALWAYS)
    await harness.scheduler.drain()
    await harness.scheduler.schedule(request("guarded", "c2"), CancellationToken())
    await harness.scheduler.drain()

    assert session.is_approved("tool:guarded")
    assert len(harness.confirmations) == 1
    assert [b[0].status for b in harness.batches] == [ToolCallStatus.SUCCESS, ToolCallStatus.SUCCESS]


@pytest.mark.asyncio
async def test_exec_and_server_approval_keys(harness, registry, session):
    registry.register_tool(
        FakeTool("shell", confirm=ExecConfirmationDetails(title="Run?", command="git status", root_command="git"))
    )
    registry.register_tool(
        FakeTool("remote", confirm=McpConfirmationDetails(title="Call?", server_name="docs", tool_name="search"))
    )

    await harness.scheduler.schedule([request("shell", "c1"), request("remote", "c2")], CancellationToken())
    await harness.scheduler.resolve_confirmation("c1", ToolConfirmationOutcome.PROCEED_ALWAYS)
    await harness.scheduler.resolve_confirmation("c2", ToolConfirmationOutcome.PROCEED_ALWAYS_SERVER)
    await harness.scheduler.drain()

    assert session.is_approved("exec:git")
    assert session.is_approved("server:docs")
    assert not session.is_approved("tool:remote")


@pytest.mark.asyncio
async def test_yolo_mode_skips_confirmation(registry, session):
    harness = Harness(registry, session, approval_mode=ApprovalMode.YOLO)
    tool = FakeTool("guarded", confirm=ToolConfirmationDetails(title="Run?"))
    registry.register_tool(tool)

    await harness.scheduler.schedule(request("guarded"), CancellationToken())
    await harness.scheduler.drain()

    assert harness.confirmations == []
    assert tool.calls == [{}]


@pytest.mark.asyncio
async def test_cancelling_token_cancels_waiting_calls(harness, registry):
    registry.register_tool(FakeTool("free"))
    registry.register_tool(FakeTool("guarded", confirm=ToolConfirmationDetails(title="Run?")))
    cancel = CancellationToken()

    await harness.scheduler.schedule([request("free", "c1"), request("guarded", "c2")], cancel)
    cancel.cancel("User cancelled.")

    assert [c.status for c in harness.batches[0]] == [ToolCallStatus.CANCELLED, ToolCallStatus.CANCELLED]
    assert harness.scheduler.pending_confirmations == []


@pytest.mark.asyncio
async def test_cancelling_token_aborts_executing_tool(harness, registry):
    registry.register_tool(FakeTool("slow", delay=10))
    cancel = CancellationToken()

    await harness.scheduler.schedule(request("slow"), cancel)
    await asyncio.sleep(0)
    assert harness.statuses() == [ToolCallStatus.EXECUTING]

    cancel.cancel()
    await harness.scheduler.drain()

    (call,) = harness.batches[0]
    assert call.status == ToolCallStatus.CANCELLED
    assert output_of(call) == {"error": f"[Operation Cancelled] Reason: {USER_CANCELLED_EXECUTION}"}


@pytest.mark.asyncio
async def test_already_cancelled_token_never_executes(harness, registry):
    tool = FakeTool("free")
    registry.register_tool(tool)
    cancel = CancellationToken()
    cancel.cancel()

    await harness.scheduler.schedule(request("free"), cancel)
    await harness.scheduler.drain()

    assert harness.batches[0][0].status == ToolCallStatus.CANCELLED
    assert tool.calls == []


# --- modifiable tools ---


class FileContext(ModifyContext):
    def __init__(self, files):
        self.files = files

    def get_file_path(self, params):
        return params["path"]

    async def get_current_content(self, params):
        return self.files.get(params["path"], "")

    async def get_proposed_content(self, params):
        return params["content"]

    def create_updated_params(self, old_content, modified_content, original_params):
        return {**original_params, "content": modified_content}


class WriteTool(ModifiableTool):
    name = "write_file"

    def __init__(self, files):
        self.files = files
        self.written = []

    async def should_confirm_execute(self, params, cancel):
        return EditConfirmationDetails(title="Write?", file_name=params["path"], file_diff="")

    def get_modify_context(self, cancel):
        return FileContext(self.files)

    async def execute(self, params, cancel, update_output=None):
        self.written.append(params["content"])
        return ToolResult.ok("written")


@pytest.mark.asyncio
async def test_modify_with_editor_rewrites_args_and_diff(registry, session):
    seen = []

    async def editor(path, current, proposed):
        seen.append((path, current, proposed))
        return "edited\n"

    tool = WriteTool({"a.txt": "old\n"})
    registry.register_tool(tool)
    harness = Harness(registry, session, editor=editor)

    await harness.scheduler.schedule(
        request("write_file", args={"path": "a.txt", "content": "new\n"}), CancellationToken()
    )
    await harness.scheduler.resolve_confirmation("c1", ToolConfirmationOutcome.MODIFY_WITH_EDITOR)

    assert seen == [("a.txt", "old\n", "new\n")]
    (waiting,) = harness.scheduler.tool_calls
    assert waiting.status == ToolCallStatus.AWAITING_APPROVAL
    assert waiting.request.args["content"] == "edited\n"
    assert "+edited" in waiting.confirmation_details.file_diff
    assert not waiting.confirmation_details.is_modifying

    await harness.scheduler.resolve_confirmation("c1", ToolConfirmationOutcome.PROCEED_ONCE)
    await harness.scheduler.drain()
    assert tool.written == ["edited\n"]


@pytest.mark.asyncio
async def test_failed_editor_leaves_call_awaiting_approval(registry, session):
    async def editor(path, current, proposed):
        raise OSError("editor exited with status 1")

    tool = WriteTool({"a.txt": "old\n"})
    registry.register_tool(tool)
    harness = Harness(registry, session, editor=editor)

    await harness.scheduler.schedule(
        request("write_file", args={"path": "a.txt", "content": "new\n"}), CancellationToken()
    )
    with pytest.raises(OSError):
        await harness.scheduler.resolve_confirmation("c1", ToolConfirmationOutcome.MODIFY_WITH_EDITOR)

    (waiting,) = harness.scheduler.tool_calls
    assert waiting.status == ToolCallStatus.AWAITING_APPROVAL
    assert waiting.request.args["content"] == "new\n"
    assert not waiting.confirmation_details.is_modifying
    (pending,) = harness.scheduler.pending_confirmations
    assert not pending.details.is_modifying

    await harness.scheduler.resolve_confirmation("c1", ToolConfirmationOutcome.PROCEED_ONCE)
    await harness.scheduler.drain()
    assert tool.written == ["new\n"]


@pytest.mark.asyncio
async def test_inline_payload_replaces_proposed_content(harness, registry):
    tool = WriteTool({"a.txt": "old\n"})
    registry.register_tool(tool)

    await harness.scheduler.schedule(
        request("write_file", args={"path": "a.txt", "content": "new\n"}), CancellationToken()
    )
    await harness.scheduler.resolve_confirmation(
        "c1", ToolConfirmationOutcome.PROCEED_ONCE, ToolConfirmationPayload(new_content="inline\n")
    )
    await harness.scheduler.drain()

    assert tool.written == ["inline\n"]

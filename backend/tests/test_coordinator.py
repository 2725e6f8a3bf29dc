"""Tests for RunCoordinator traversal, holds, resume and operator actions."""

import httpx
import pytest

from app.core.constants import DefinitionKind
from app.engine.errors import ConsistencyViolation, InvalidRequest, NotFoundError
from app.engine.state_store import STALE_REASON, ExecutionSeed

from conftest import edge, node


async def only_execution(state, run_id):
    executions = await state.list_run_executions(run_id)
    assert len(executions) == 1
    return executions[0]


async def visited(state, execution_id):
    return [(log.node_id, log.status) for log in await state.list_logs(execution_id)]


@pytest.fixture
def linear_workflow(graphs):
    graphs.add_workflow(
        "wf",
        [
            node("upload", "MANUAL_UPLOAD"),
            node("tag", "SET_VALUE", assignments=[{"field": "a", "value": 1}]),
            node("calc", "SET_VALUE", assignments=[{"field": "b", "value": "{{ $document.a + 1 }}"}]),
        ],
        [edge("upload", "tag"), edge("tag", "calc")],
    )
    return "wf"


@pytest.fixture
def folder_workflow(graphs):
    graphs.add_workflow(
        "wf-folder",
        [
            node("upload", "MANUAL_UPLOAD"),
            node("folder", "DOCUMENT_FOLDER", folder_instance_id="inbox"),
            node("after", "SET_VALUE", assignments=[{"field": "released", "value": True}]),
        ],
        [edge("upload", "folder"), edge("folder", "after")],
    )
    return "wf-folder"


class TestLinearTraversal:
    @pytest.mark.asyncio
    async def test_nodes_run_in_order_and_execution_completes(self, coordinator, state, linear_workflow):
        """Test A → B → C produces three ordered completed logs and merged metadata."""
        run_id = await coordinator.start_run(linear_workflow, [{"document_id": "doc-1"}])

        execution = await only_execution(state, run_id)
        assert execution.status == "completed"
        assert execution.current_node_id == "calc"
        assert execution.metadata_["document_id"] == "doc-1"
        assert execution.metadata_["b"] == 2

        logs = await state.list_logs(execution.id)
        assert [log.node_id for log in logs] == ["upload", "tag", "calc"]
        assert [log.sequence for log in logs] == [0, 1, 2]
        assert all(log.status == "completed" and log.completed_at is not None for log in logs)
        assert logs[2].input_metadata["a"] == 1

        run = await coordinator.get_run_status(run_id)
        assert run["status"] == "completed"
        assert run["triggered_by"] == "MANUAL"
        assert run["execution_counts"] == {"completed": 1}
        assert run["completed_at"] is not None

    @pytest.mark.asyncio
    async def test_background_run(self, coordinator, state, linear_workflow):
        """Test that a background run finishes once the coordinator is idle."""
        run_id = await coordinator.start_run(linear_workflow, [{"document_id": "doc-1"}], background=True)
        await coordinator.wait_idle()

        assert (await coordinator.get_run_status(run_id))["status"] == "completed"

    @pytest.mark.asyncio
    async def test_many_documents_with_concurrency(self, make_coordinator, state, linear_workflow):
        """Test that several documents advance independently under a worker pool."""
        coordinator = make_coordinator(concurrency=3)
        run_id = await coordinator.start_run(
            linear_workflow,
            [{"document_id": document_id} for document_id in ("doc-1", "doc-2", "doc-3")],
        )

        executions = await state.list_run_executions(run_id)
        assert sorted(e.document_id for e in executions) == ["doc-1", "doc-2", "doc-3"]
        assert {e.status for e in executions} == {"completed"}

    @pytest.mark.asyncio
    async def test_start_node_override(self, coordinator, state, linear_workflow):
        """Test that an entry's start node replaces the graph's entry nodes."""
        run_id = await coordinator.start_run(
            linear_workflow,
            [{"document_id": "doc-1", "start_node_id": "tag"}],
        )

        execution = await only_execution(state, run_id)
        assert await visited(state, execution.id) == [("tag", "completed"), ("calc", "completed")]


class TestRouting:
    @pytest.fixture
    def if_workflow(self, graphs):
        graphs.add_workflow(
            "wf-if",
            [
                node("upload", "MANUAL_UPLOAD"),
                node(
                    "check",
                    "IF",
                    conditions=[{"field": "$document.amount", "operator": "greater_than", "value": 100, "type": "number"}],
                ),
                node("big", "SET_VALUE", assignments=[{"field": "size", "value": "big"}]),
                node("small", "SET_VALUE", assignments=[{"field": "size", "value": "small"}]),
            ],
            [edge("upload", "check"), edge("check", "big", "true"), edge("check", "small", "false")],
        )
        return "wf-if"

    @pytest.mark.asyncio
    async def test_if_takes_one_port(self, coordinator, state, if_workflow):
        """Test that IF follows only the edges of the port it chose."""
        run_id = await coordinator.start_run(
            if_workflow,
            [
                {"document_id": "doc-1", "metadata": {"amount": 500}},
                {"document_id": "doc-2", "metadata": {"amount": "50"}},
            ],
        )

        by_document = {e.document_id: e for e in await state.list_run_executions(run_id)}
        assert by_document["doc-1"].metadata_["size"] == "big"
        assert by_document["doc-2"].metadata_["size"] == "small"

        logs = await state.list_logs(by_document["doc-2"].id)
        assert [log.node_id for log in logs] == ["upload", "check", "small"]
        assert logs[1].output_port == "false"

    @pytest.mark.asyncio
    async def test_switch_fallback(self, coordinator, state, graphs):
        """Test that an unmatched SWITCH takes the fallback port."""
        graphs.add_workflow(
            "wf-switch",
            [
                node(
                    "route",
                    "SWITCH",
                    cases=[{"port": "eu", "conditions": [{"field": "$document.region", "operator": "equals", "value": "EU"}]}],
                ),
                node("eu", "SET_VALUE", assignments=[{"field": "desk", "value": "eu"}]),
                node("other", "SET_VALUE", assignments=[{"field": "desk", "value": "other"}]),
            ],
            [edge("route", "eu", "eu"), edge("route", "other", "fallback")],
        )

        run_id = await coordinator.start_run("wf-switch", [{"document_id": "doc-1", "metadata": {"region": "US"}}])

        execution = await only_execution(state, run_id)
        assert execution.metadata_["desk"] == "other"

    @pytest.mark.asyncio
    async def test_unrouted_then_resumed_on_another_port(self, coordinator, state, graphs):
        """Test that a port without edges parks the execution as unrouted until resumed."""
        graphs.add_workflow(
            "wf-unrouted",
            [
                node("check", "IF", conditions=[{"field": "$document.ok", "operator": "is_true", "type": "boolean"}]),
                node("next", "SET_VALUE", assignments=[{"field": "done", "value": True}]),
            ],
            [edge("check", "next", "true")],
        )
        run_id = await coordinator.start_run("wf-unrouted", [{"document_id": "doc-1", "metadata": {"ok": False}}])

        execution = await only_execution(state, run_id)
        assert execution.status == "unrouted"
        assert execution.unrouted_port == "false"
        assert execution.current_node_id == "check"
        assert await visited(state, execution.id) == [("check", "unrouted")]
        assert (await coordinator.get_run_status(run_id))["status"] == "completed"

        # Resuming on the same port leaves it unrouted
        assert await coordinator.resume_execution(execution.id, "check", run_id) == "unrouted"

        assert await coordinator.resume_execution(execution.id, "check", run_id, port="true") == "completed"
        execution = await state.get_execution(execution.id)
        assert execution.unrouted_port is None
        assert execution.metadata_["done"] is True

    @pytest.mark.asyncio
    async def test_terminal_node_on_named_port_completes(self, coordinator, state, graphs):
        """Test that a node with no outgoing edges completes whatever its port."""
        graphs.add_workflow(
            "wf-leaf",
            [node("check", "IF", conditions=[{"field": "$document.ok", "operator": "exists"}])],
            [],
        )
        run_id = await coordinator.start_run("wf-leaf", [{"document_id": "doc-1"}])

        assert (await only_execution(state, run_id)).status == "completed"

    @pytest.mark.asyncio
    async def test_categorisation_routes_on_label(self, coordinator, state, graphs, definitions, classification):
        """Test that the classified label is the output port."""
        definitions.add(
            DefinitionKind.CATEGORISATION_PROMPT,
            "kinds",
            {"labels": [{"label": "invoice"}, {"label": "po"}]},
        )
        classification.labels["doc-1"] = "po"
        graphs.add_workflow(
            "wf-cat",
            [
                node("classify", "CATEGORISATION", categorisation_prompt_id="kinds"),
                node("po", "SET_VALUE", assignments=[{"field": "path", "value": "po"}]),
                node("invoice", "SET_VALUE", assignments=[{"field": "path", "value": "invoice"}]),
            ],
            [edge("classify", "po", "po"), edge("classify", "invoice", "invoice")],
        )

        run_id = await coordinator.start_run("wf-cat", [{"document_id": "doc-1"}])

        execution = await only_execution(state, run_id)
        assert execution.metadata_["category"] == "po"
        assert execution.metadata_["path"] == "po"


class TestFanout:
    @pytest.mark.asyncio
    async def test_split_spawns_child_executions(self, coordinator, state, graphs, definitions, documents, splitting):
        """Test that each sub-document gets its own execution starting after the splitter."""
        definitions.add(DefinitionKind.SPLITTING_INSTRUCTION, "per-page", {"instructions": "one invoice per page"})
        splitting.parts["doc-1"] = [
            {"content": {"file_name": "p1.pdf"}, "label": "invoice"},
            {"content": {"file_name": "p2.pdf"}, "label": "credit_note"},
        ]
        graphs.add_workflow(
            "wf-split",
            [
                node("upload", "MANUAL_UPLOAD"),
                node("split", "SPLITTING", splitting_instruction_id="per-page"),
                node("tag", "SET_VALUE", assignments=[{"field": "seen", "value": True}]),
            ],
            [edge("upload", "split"), edge("split", "tag")],
        )

        run_id = await coordinator.start_run("wf-split", [{"document_id": "doc-1"}])

        executions = await state.list_run_executions(run_id)
        assert len(executions) == 3
        parent = next(e for e in executions if e.document_id == "doc-1")
        children = [e for e in executions if e.document_id != "doc-1"]

        assert parent.status == "completed"
        assert await visited(state, parent.id) == [("upload", "completed"), ("split", "completed")]
        assert sorted(c.metadata_["label"] for c in children) == ["credit_note", "invoice"]
        for child in children:
            assert child.status == "completed"
            assert child.metadata_["parent_document_id"] == "doc-1"
            assert child.metadata_["seen"] is True
            assert await visited(state, child.id) == [("tag", "completed")]
            assert documents.documents[child.document_id].parent_document_id == "doc-1"

        assert (await coordinator.get_run_status(run_id))["execution_counts"] == {"completed": 3}

    @pytest.mark.asyncio
    async def test_split_without_instruction_passes_through(self, coordinator, state, graphs):
        """Test that an unconfigured splitter continues with the same document."""
        graphs.add_workflow(
            "wf-split",
            [node("split", "SPLITTING"), node("tag", "SET_VALUE", assignments=[{"field": "seen", "value": True}])],
            [edge("split", "tag")],
        )

        run_id = await coordinator.start_run("wf-split", [{"document_id": "doc-1"}])

        assert (await only_execution(state, run_id)).metadata_["seen"] is True


class TestFailures:
    @pytest.mark.asyncio
    async def test_unknown_node_kind_fails_execution_and_run(self, coordinator, state, graphs):
        """Test that a node without a processor fails the execution and the run."""
        graphs.add_workflow(
            "wf-bad",
            [node("upload", "MANUAL_UPLOAD"), node("mystery", "TELEPORT"), node("never", "SET_VALUE")],
            [edge("upload", "mystery"), edge("mystery", "never")],
        )

        run_id = await coordinator.start_run("wf-bad", [{"document_id": "doc-1"}])

        execution = await only_execution(state, run_id)
        assert execution.status == "failed"
        assert "No processor registered" in execution.error_message
        logs = await state.list_logs(execution.id)
        assert [(log.node_id, log.status) for log in logs] == [("upload", "completed"), ("mystery", "failed")]
        assert "TELEPORT" in logs[1].error

        run = await coordinator.get_run_status(run_id)
        assert run["status"] == "failed"

    @pytest.mark.asyncio
    async def test_missing_definition_fails(self, coordinator, state, graphs):
        """Test that a dangling definition reference is a step failure."""
        graphs.add_workflow("wf-ext", [node("extract", "EXTRACTOR", extractor_id="ghost")], [])

        run_id = await coordinator.start_run("wf-ext", [{"document_id": "doc-1"}])

        execution = await only_execution(state, run_id)
        assert execution.status == "failed"
        assert "ghost" in execution.error_message

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_other_documents(self, coordinator, state, graphs):
        """Test that documents in one run fail independently."""
        graphs.add_workflow(
            "wf-calc",
            [node("calc", "SET_VALUE", assignments=[{"field": "ratio", "value": "{{ 10 / $document.n }}"}])],
            [],
        )

        run_id = await coordinator.start_run(
            "wf-calc",
            [
                {"document_id": "doc-1", "metadata": {"n": 0}},
                {"document_id": "doc-2", "metadata": {"n": 5}},
            ],
        )

        by_document = {e.document_id: e for e in await state.list_run_executions(run_id)}
        assert by_document["doc-1"].status == "failed"
        assert by_document["doc-2"].status == "completed"
        assert by_document["doc-2"].metadata_["ratio"] == 2
        assert (await coordinator.get_run_status(run_id))["status"] == "failed"

    @pytest.mark.asyncio
    async def test_state_store_error_closes_open_log(self, coordinator, state, linear_workflow, monkeypatch):
        """Test that a crash while closing a step still leaves no open log row."""
        async def broken_finish_step(*args, **kwargs):
            raise RuntimeError("disk full")

        monkeypatch.setattr(state, "finish_step", broken_finish_step)

        run_id = await coordinator.start_run(linear_workflow, [{"document_id": "doc-1"}])

        execution = await only_execution(state, run_id)
        assert execution.status == "failed"
        assert "disk full" in execution.error_message
        logs = await state.list_logs(execution.id)
        assert [(log.node_id, log.status) for log in logs] == [("upload", "failed")]
        assert "disk full" in logs[0].error
        assert logs[0].completed_at is not None
        assert (await coordinator.get_run_status(run_id))["status"] == "failed"


class TestHttpNode:
    @pytest.fixture
    def http_workflow(self, graphs):
        graphs.add_workflow(
            "wf-http",
            [
                node(
                    "notify",
                    "HTTP",
                    method="post",
                    url="https://hooks.example.com/documents",
                    headers={"X-Document": "$document.document_id"},
                    body={"total": "$document.total", "source": "engine", "double": "{{ $document.total * 2 }}"},
                ),
            ],
            [],
        )
        return "wf-http"

    @pytest.mark.asyncio
    async def test_request_is_resolved_and_response_recorded(self, coordinator, state, http, http_workflow):
        """Test URL / header / body resolution and the recorded response."""
        run_id = await coordinator.start_run(http_workflow, [{"document_id": "doc-1", "metadata": {"total": 10}}])

        assert http.requests == [{
            "method": "POST",
            "url": "https://hooks.example.com/documents",
            "headers": {"X-Document": "doc-1"},
            "body": {"total": 10, "source": "engine", "double": 20},
        }]
        execution = await only_execution(state, run_id)
        assert execution.status == "completed"
        assert execution.metadata_["http_response"] == {"status": 200, "body": {"ok": True}}

    @pytest.mark.asyncio
    async def test_error_status_fails(self, coordinator, state, http, http_workflow):
        """Test that a non-2xx response fails the step."""
        http.response = {"status": 500, "body": "boom"}

        run_id = await coordinator.start_run(http_workflow, [{"document_id": "doc-1", "metadata": {"total": 1}}])

        execution = await only_execution(state, run_id)
        assert execution.status == "failed"
        assert "500" in execution.error_message

    @pytest.mark.asyncio
    async def test_transport_error_fails(self, coordinator, state, http, http_workflow):
        """Test that a transport error fails the step."""
        http.error = httpx.ConnectError("connection refused")

        run_id = await coordinator.start_run(http_workflow, [{"document_id": "doc-1", "metadata": {"total": 1}}])

        execution = await only_execution(state, run_id)
        assert execution.status == "failed"
        assert "HTTP request failed" in execution.error_message


class TestHoldAndResume:
    @pytest.mark.asyncio
    async def test_folder_holds_until_resumed(self, coordinator, state, folder_workflow):
        """Test that a held execution resumes past its node and the run is re-finalized."""
        run_id = await coordinator.start_run(folder_workflow, [{"document_id": "doc-1"}])

        execution = await only_execution(state, run_id)
        assert execution.status == "held"
        assert execution.current_node_id == "folder"
        held = await state.list_held_documents(execution.id)
        assert [(h.hold_kind, h.folder_id, h.status) for h in held] == [("folder", "inbox", "held")]
        assert (await coordinator.get_run_status(run_id))["status"] == "completed"

        status = await coordinator.resume_execution(execution.id, "folder", run_id)

        assert status == "completed"
        assert await visited(state, execution.id) == [
            ("upload", "completed"),
            ("folder", "held"),
            ("after", "completed"),
        ]
        assert (await state.list_held_documents(execution.id))[0].status == "released"
        run = await coordinator.get_run_status(run_id)
        assert run["status"] == "completed"
        assert run["execution_counts"] == {"completed": 1}

    @pytest.mark.asyncio
    async def test_resume_rejects_settled_execution(self, coordinator, state, linear_workflow):
        """Test that only held or unrouted executions can be resumed."""
        run_id = await coordinator.start_run(linear_workflow, [{"document_id": "doc-1"}])
        execution = await only_execution(state, run_id)

        with pytest.raises(ConsistencyViolation, match="Cannot resume"):
            await coordinator.resume_execution(execution.id, "calc", run_id)

    @pytest.mark.asyncio
    async def test_resume_rejects_wrong_run(self, coordinator, state, folder_workflow):
        """Test that the execution must belong to the given run."""
        run_id = await coordinator.start_run(folder_workflow, [{"document_id": "doc-1"}])
        execution = await only_execution(state, run_id)

        with pytest.raises(ConsistencyViolation, match="does not belong"):
            await coordinator.resume_execution(execution.id, "folder", "some-other-run")

    @pytest.mark.asyncio
    async def test_resume_unknown_execution(self, coordinator):
        """Test that resuming a missing execution is a not-found error."""
        with pytest.raises(NotFoundError):
            await coordinator.resume_execution("missing", "folder", "run")

    @pytest.mark.asyncio
    async def test_extractor_holds_on_missing_mandatory_field(self, coordinator, state, graphs, definitions, extraction):
        """Test that extraction output is kept on the held execution."""
        definitions.add(DefinitionKind.EXTRACTOR, "po", {"header_fields": [{"field_name": "po_number", "is_mandatory": True}]})
        extraction.results["doc-1"] = {"header": {"total": 12}, "tables": {}}
        graphs.add_workflow("wf-ext", [node("extract", "EXTRACTOR", extractor_id="po")], [])

        run_id = await coordinator.start_run("wf-ext", [{"document_id": "doc-1"}])

        execution = await only_execution(state, run_id)
        assert execution.status == "held"
        assert execution.metadata_["header"] == {"total": 12}
        assert execution.metadata_["extractor_id"] == "po"
        held = (await state.list_held_documents(execution.id))[0]
        assert held.hold_kind == "extractor"
        assert "po_number" in held.reason


class TestOrphans:
    @pytest.mark.asyncio
    async def test_mark_orphaned_after_node_removed(self, coordinator, state, graphs, folder_workflow):
        """Test that executions waiting on a deleted node become orphaned."""
        run_id = await coordinator.start_run(folder_workflow, [{"document_id": "doc-1"}])
        execution = await only_execution(state, run_id)

        graphs.remove_node(folder_workflow, "folder")
        orphaned = await coordinator.mark_orphaned(folder_workflow)

        assert orphaned == [execution.id]
        execution = await state.get_execution(execution.id)
        assert execution.status == "orphaned"
        assert execution.orphaned_node_name == "folder"

    @pytest.mark.asyncio
    async def test_resume_from_removed_node_orphans(self, coordinator, state, graphs, folder_workflow):
        """Test that resuming at a node no longer in the graph orphans the execution."""
        run_id = await coordinator.start_run(folder_workflow, [{"document_id": "doc-1"}])
        execution = await only_execution(state, run_id)
        graphs.remove_node(folder_workflow, "folder")

        assert await coordinator.resume_execution(execution.id, "folder", run_id) == "orphaned"


class TestEntryPoints:
    @pytest.fixture
    def webhook_workflow(self, graphs):
        graphs.add_workflow(
            "wf-hook",
            [
                node("hook", "WEBHOOK"),
                node("tag", "SET_VALUE", assignments=[{"field": "order", "value": "{{ $document.order + 1 }}"}]),
            ],
            [edge("hook", "tag")],
        )
        return "wf-hook"

    @pytest.mark.asyncio
    async def test_webhook_run_starts_at_the_webhook_node(self, coordinator, state, webhook_workflow):
        """Test that the payload becomes the execution's metadata."""
        run_id = await coordinator.trigger_webhook("hook", {"order": 7})

        execution = await only_execution(state, run_id)
        assert execution.document_id is None
        assert execution.metadata_["order"] == 8
        assert execution.metadata_["_webhook_node_id"] == "hook"
        assert await visited(state, execution.id) == [("hook", "completed"), ("tag", "completed")]
        assert (await coordinator.get_run_status(run_id))["triggered_by"] == "WEBHOOK"

    @pytest.mark.asyncio
    async def test_webhook_rejects_other_nodes(self, coordinator, webhook_workflow):
        """Test node lookup and kind validation."""
        with pytest.raises(InvalidRequest):
            await coordinator.trigger_webhook("tag", {})
        with pytest.raises(NotFoundError):
            await coordinator.trigger_webhook("nope", {})

    @pytest.mark.asyncio
    async def test_retrigger_reenters_at_given_nodes(self, coordinator, state, linear_workflow):
        """Test that a retrigger creates a new run from the given node."""
        first_run = await coordinator.start_run(linear_workflow, [{"document_id": "doc-1"}])
        first = await only_execution(state, first_run)

        run_id = await coordinator.retrigger(linear_workflow, [first.id], ["tag"])

        assert run_id != first_run
        execution = await only_execution(state, run_id)
        assert execution.document_id == "doc-1"
        assert execution.start_node_id == "tag"
        assert await visited(state, execution.id) == [("tag", "completed"), ("calc", "completed")]
        assert (await coordinator.get_run_status(run_id))["triggered_by"] == "RETRIGGER"

    @pytest.mark.asyncio
    async def test_retrigger_validation(self, coordinator, state, linear_workflow):
        """Test that a retrigger needs documents and nodes."""
        run_id = await coordinator.start_run(linear_workflow, [{"document_id": "doc-1"}])
        execution = await only_execution(state, run_id)

        with pytest.raises(InvalidRequest):
            await coordinator.retrigger(linear_workflow, ["missing"], ["tag"])
        with pytest.raises(InvalidRequest):
            await coordinator.retrigger(linear_workflow, [execution.id], [])


class TestOperatorViews:
    @pytest.mark.asyncio
    async def test_node_status_summary(self, coordinator, folder_workflow):
        """Test per-node counts in topological order."""
        run_id = await coordinator.start_run(
            folder_workflow,
            [{"document_id": "doc-1"}, {"document_id": "doc-2"}],
        )

        summary = await coordinator.get_node_status_summary(run_id)

        assert [row["node_id"] for row in summary] == ["upload", "folder", "after"]
        by_node = {row["node_id"]: row for row in summary}
        assert by_node["upload"]["completed"] == 2
        assert by_node["folder"]["held"] == 2
        assert by_node["after"]["completed"] == 0

    @pytest.mark.asyncio
    async def test_delete_execution(self, coordinator, state, folder_workflow):
        """Test that deleting removes the execution and its logs."""
        run_id = await coordinator.start_run(folder_workflow, [{"document_id": "doc-1"}])
        execution = await only_execution(state, run_id)

        await coordinator.delete_execution(execution.id)

        with pytest.raises(NotFoundError):
            await state.get_execution(execution.id)
        assert await state.list_logs(execution.id) == []
        with pytest.raises(NotFoundError):
            await coordinator.delete_execution(execution.id)

    @pytest.mark.asyncio
    async def test_unknown_run(self, coordinator):
        """Test that run views report missing runs."""
        with pytest.raises(NotFoundError):
            await coordinator.get_run_status("missing")


class TestRecovery:
    @pytest.mark.asyncio
    async def test_recover_stale_fails_in_flight_state(self, coordinator, state):
        """Test that a crashed process's open logs, executions and runs are failed."""
        run, executions = await state.create_run("wf", "MANUAL", [ExecutionSeed(document_id="doc-1")])
        await state.begin_step(executions[0].id, "upload", {})

        counts = await coordinator.recover_stale()

        assert counts == {"logs": 1, "executions": 1, "runs": 1}
        execution = await state.get_execution(executions[0].id)
        assert execution.status == "failed"
        assert execution.error_message == STALE_REASON
        assert (await state.list_logs(execution.id))[0].status == "failed"
        assert (await state.get_run(run.id)).status == "failed"

    @pytest.mark.asyncio
    async def test_recover_stale_never_raises(self, coordinator, monkeypatch):
        """Test that a failing sweep is logged and swallowed at startup."""
        async def broken(*args, **kwargs):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(coordinator.state, "recover_stale", broken)

        assert await coordinator.recover_stale() is None

    @pytest.mark.asyncio
    async def test_begin_step_rejects_second_open_log(self, state):
        """Test that an execution never has two open log rows."""
        _, executions = await state.create_run("wf", "MANUAL", [ExecutionSeed(document_id="doc-1")])
        await state.begin_step(executions[0].id, "a", {})

        with pytest.raises(ConsistencyViolation):
            await state.begin_step(executions[0].id, "b", {})

import logging
import threading

import pytest

from fakes import FakeSpawn, FakeTransport, initialize, initialized_client, logger, server_config
from parley_client import (
    LanguageServerClient,
    LanguageServerStatus,
    path_to_uri,
    textDocumentSyncOptions,
    uri_to_path,
)
from parley_codec import error_response, notification, request, response
from parley_errors import (
    ProtocolError,
    RequestCancelled,
    RequestTimeout,
    SpawnError,
    TransportClosed,
    failure,
)

DOCUMENT_URI = "file:///project/main.py"


def recorder():
    calls = []

    def callback(session, response):
        calls.append(response)

    return calls, callback


def did_open(uri=DOCUMENT_URI):
    return {
        "textDocument": {
            "uri": uri,
            "languageId": "python",
            "version": 0,
            "text": "import os\n",
        }
    }


def last_request_id(transport, method):
    return transport.requests(method)[-1]["id"]


class TestHandshake:
    def test_initialize(self):
        client, transport = initialized_client()

        assert client.is_server_initialized()
        assert transport.methods() == ["initialize", "initialized"]
        assert client.server_info() == {"name": "fake", "version": "1.0"}

    def test_initialize_params(self):
        spawn = FakeSpawn()

        client = LanguageServerClient(
            logger,
            server_config(initializationOptions={"lint": True}),
            spawn=spawn,
        )
        client.initialize("file:///project", "Editor", "1.2.3")
        client.tick()

        (message,) = spawn.transports["fake"].requests("initialize")

        params = message["params"]

        assert params["rootUri"] == "file:///project"
        assert params["rootPath"] == "/project"
        assert params["workspaceFolders"] == [{"name": "project", "uri": "file:///project"}]
        assert params["clientInfo"] == {"name": "Editor", "version": "1.2.3"}
        assert params["initializationOptions"] == {"lint": True}
        assert params["capabilities"]["textDocument"]["synchronization"]["change"] == 1

    def test_initialize_once(self):
        client, transport = initialized_client()

        client.initialize("file:///project")
        client.tick()

        assert len(transport.requests("initialize")) == 1

    def test_status(self):
        spawn = FakeSpawn()

        client = LanguageServerClient(logger, server_config(), spawn=spawn)

        assert client.server_status() == LanguageServerStatus.UNINITIALIZED

        client.initialize()

        assert client.is_server_initializing()

        initialize(client, spawn.transports["fake"])

        assert client.is_server_initialized()

    def test_traffic_before_initialized_is_deferred(self):
        spawn = FakeSpawn()

        client = LanguageServerClient(logger, server_config(), spawn=spawn)
        client.initialize("file:///project")

        client.textDocument_didOpen(did_open())
        client.push_request("textDocument/completion", {"position": {"line": 0, "character": 0}})

        transport = spawn.transports["fake"]

        client.tick()

        assert transport.methods() == ["initialize"]

        initialize(client, transport)

        assert transport.methods() == [
            "initialize",
            "initialized",
            "textDocument/didOpen",
            "textDocument/completion",
        ]

    def test_initialize_error_terminates(self):
        spawn = FakeSpawn()

        client = LanguageServerClient(logger, server_config(), spawn=spawn)

        calls, callback = recorder()
        shutdowns = []

        client.add_event_listener("shutdown", shutdowns.append)
        client.initialize(callback=callback)
        client.tick()

        transport = spawn.transports["fake"]
        transport.feed(error_response(last_request_id(transport, "initialize"), -32603, "boom"))

        client.tick()

        assert client.is_server_terminated()
        assert transport.closed
        assert shutdowns == [client]
        assert isinstance(failure(calls[0]), ProtocolError)

    def test_initialize_error_closes_transport_without_the_lock(self):
        class SlowCloseTransport(FakeTransport):
            client = None
            status_while_closing = None

            def close(self, timeout=5.0):
                statuses = []

                # Another thread must be able to query the client meanwhile.
                thread = threading.Thread(
                    target=lambda: statuses.append(self.client.server_status()),
                    daemon=True,
                )
                thread.start()
                thread.join(1.0)

                self.status_while_closing = list(statuses)

                return super().close(timeout)

        spawn = FakeSpawn(transport_class=SlowCloseTransport)

        client = LanguageServerClient(logger, server_config(), spawn=spawn)
        client.initialize()

        transport = spawn.transports["fake"]
        transport.client = client

        client.tick()

        transport.feed(error_response(last_request_id(transport, "initialize"), -32603, "boom"))

        client.tick()

        assert transport.closed
        assert transport.status_while_closing == [LanguageServerStatus.TERMINATED]

    def test_spawn_error(self):
        client = LanguageServerClient(logger, server_config(), spawn=FakeSpawn(fail=True))

        with pytest.raises(SpawnError):
            client.initialize()

        assert client.server_status() == LanguageServerStatus.UNINITIALIZED

    def test_initialized_event(self):
        spawn = FakeSpawn()

        client = LanguageServerClient(logger, server_config(), spawn=spawn)

        events = []

        client.add_event_listener("initialized", events.append)
        client.initialize()

        initialize(client, spawn.transports["fake"])

        assert events == [client]


class TestCapabilities:
    def test_not_initialized(self):
        client = LanguageServerClient(logger, server_config(), spawn=FakeSpawn())

        assert client.capabilities() is None
        assert client.support_method("textDocument/definition") is None
        assert client.completion_trigger_characters() == []

    def test_support_method(self):
        client, _ = initialized_client(
            {
                "textDocumentSync": 1,
                "completionProvider": {"triggerCharacters": ["."]},
                "typeDefinitionProvider": True,
            }
        )

        assert client.support_method("textDocument/didOpen")
        assert client.support_method("textDocument/didChange")
        assert client.support_method("textDocument/completion")
        assert client.support_method("textDocument/typeDefinition")
        assert client.support_method("textDocument/definition") is False
        assert client.support_method("textDocument/hover") is False
        assert client.completion_trigger_characters() == ["."]

    def test_options_object_enables_provider(self):
        client, _ = initialized_client({"completionProvider": {}, "definitionProvider": False})

        assert client.support_method("textDocument/completion") is True
        assert client.support_method("textDocument/definition") is False

    def test_empty_capabilities(self):
        client, _ = initialized_client()

        assert client.capabilities() == {}
        assert client.support_method("textDocument/completion") is False

    def test_text_document_sync_options(self):
        assert textDocumentSyncOptions(None) == {"openClose": False, "change": 0}
        assert textDocumentSyncOptions(2) == {"openClose": True, "change": 2}
        assert textDocumentSyncOptions({"change": 1}) == {"change": 1}

    def test_completion_item_kind(self):
        client, _ = initialized_client()

        assert client.completion_item_kind(3) == "Function"
        assert client.completion_item_kind(None) is None
        assert client.completion_item_kind(99) is None


class TestRequests:
    def test_response(self):
        client, transport = initialized_client()

        calls, callback = recorder()

        client.push_request("textDocument/hover", {"position": {"line": 1, "character": 2}}, callback)
        client.tick()

        id = last_request_id(transport, "textDocument/hover")

        assert client.pending_requests() == 1

        transport.feed(response(id, {"contents": "os"}))
        client.tick()

        assert calls == [response(id, {"contents": "os"})]
        assert client.pending_requests() == 0

    def test_ids_are_strictly_increasing(self):
        client, transport = initialized_client()

        for _ in range(5):
            client.push_request("textDocument/hover", {})

        client.tick()

        ids = [message["id"] for message in transport.messages() if "id" in message]

        assert all(a < b for a, b in zip(ids, ids[1:]))

    def test_error_response_is_delivered_as_failure(self):
        client, transport = initialized_client()

        calls, callback = recorder()

        client.push_request("textDocument/definition", {}, callback)
        client.tick()

        id = last_request_id(transport, "textDocument/definition")

        transport.feed(error_response(id, -32602, "Invalid params"))
        client.tick()

        error = failure(calls[0])

        assert isinstance(error, ProtocolError)
        assert error.code == -32602
        assert client.is_server_initialized()

    def test_duplicate_response_is_discarded(self, caplog):
        client, transport = initialized_client()

        calls, callback = recorder()

        client.push_request("textDocument/definition", {}, callback)
        client.tick()

        id = last_request_id(transport, "textDocument/definition")

        transport.feed(response(id, None), response(id, None))

        with caplog.at_level(logging.WARNING, logger="tests"):
            client.tick()

        assert len(calls) == 1
        assert "Unmatched response" in caplog.text

    def test_error_without_id_is_logged(self, caplog):
        client, transport = initialized_client()

        transport.feed(error_response(None, -32700, "Parse error"))

        with caplog.at_level(logging.ERROR, logger="tests"):
            client.tick()

        assert "Parse error" in caplog.text
        assert client.is_server_initialized()

    def test_timeout(self):
        client, _ = initialized_client()

        calls, callback = recorder()

        client.push_request("textDocument/completion", {}, callback, timeout=0)
        client.tick()

        assert isinstance(failure(calls[0]), RequestTimeout)
        assert client.pending_requests() == 0

    def test_default_timeout_from_config(self):
        client, _ = initialized_client(request_timeout=0)

        calls, callback = recorder()

        client.push_request("textDocument/completion", {}, callback)
        client.tick()

        assert isinstance(failure(calls[0]), RequestTimeout)

    def test_callback_error_does_not_stop_the_tick(self):
        client, transport = initialized_client()

        def fail(session, response):
            raise RuntimeError("boom")

        calls, callback = recorder()

        client.push_request("textDocument/hover", {}, fail)
        client.push_request("textDocument/hover", {}, callback)
        client.tick()

        first, second = [m["id"] for m in transport.requests("textDocument/hover")]

        transport.feed(response(first), response(second))
        client.tick()

        assert calls == [response(second)]


class TestIncoming:
    def test_malformed_frame_is_dropped(self):
        client, transport = initialized_client()

        messages = []

        client.add_message_listener("window/logMessage", lambda s, p: messages.append(p))

        transport.chunks.append(b"Content-Length: 3\r\n\r\n{x}")
        transport.feed(notification("window/logMessage", {"type": 3, "message": "ready"}))

        client.tick()

        assert messages == [{"type": 3, "message": "ready"}]
        assert client.is_server_initialized()

    def test_notification_listeners(self):
        client, transport = initialized_client()

        calls = []

        client.add_message_listener("$/progress", lambda s, p: calls.append(("a", s, p)))
        client.add_message_listener("$/progress", lambda s, p: calls.append(("b", s, p)))

        transport.feed(notification("$/progress", {"token": 1}))
        client.tick()

        assert calls == [("a", client, {"token": 1}), ("b", client, {"token": 1})]

    def test_handled_server_request_is_answered(self):
        client, transport = initialized_client()

        client.add_message_listener("window/workDoneProgress/create", lambda s, p: None)

        transport.feed(request("token-1", "window/workDoneProgress/create", {"token": "x"}))
        client.tick()

        (reply,) = [m for m in transport.messages() if m.get("id") == "token-1"]

        assert reply == response("token-1", None)

    def test_unhandled_server_request_is_rejected(self):
        client, transport = initialized_client()

        transport.feed(request(7, "client/registerCapability", {"registrations": []}))
        client.tick()

        (reply,) = [m for m in transport.messages() if m.get("id") == 7]

        assert reply["error"]["code"] == -32601

    def test_stderr_is_logged(self, caplog):
        client, transport = initialized_client()

        transport.stderr.append("warming up")

        with caplog.at_level(logging.DEBUG, logger="tests"):
            client.tick()

        assert "stderr: warming up" in caplog.text

    def test_verbose(self, caplog):
        client, transport = initialized_client(verbose=True)

        client.push_request("textDocument/hover", {})
        client.tick()

        transport.feed(response(last_request_id(transport, "textDocument/hover"), "hi"))

        with caplog.at_level(logging.INFO, logger="tests"):
            client.tick()

        assert "Response:" in caplog.text

    def test_json_logger(self, caplog):
        spawn = FakeSpawn()

        client = LanguageServerClient(
            logger,
            server_config(),
            spawn=spawn,
            json_logger=logging.getLogger("tests.json"),
        )
        client.initialize()

        with caplog.at_level(logging.DEBUG, logger="tests.json"):
            initialize(client, spawn.transports["fake"])

        assert '--> {"jsonrpc": "2.0", "id": 1, "method": "initialize"' in caplog.text
        assert '<-- {"jsonrpc": "2.0", "id": 1, "result"' in caplog.text


class TestTeardown:
    def test_transport_closed_fails_pending_requests(self):
        client, transport = initialized_client()

        calls, callback = recorder()

        shutdowns = []

        client.add_event_listener("shutdown", shutdowns.append)

        for _ in range(3):
            client.push_request("textDocument/hover", {}, callback)

        client.tick()

        transport.alive = False

        client.tick()

        assert len(calls) == 3
        assert all(isinstance(failure(r), TransportClosed) for r in calls)
        assert client.is_server_terminated()
        assert client.pending_requests() == 0
        assert shutdowns == [client]

    def test_shutdown(self):
        client, transport = initialized_client()

        calls, callback = recorder()

        client.push_request("textDocument/hover", {}, callback)
        client.tick()

        client.shutdown()

        assert transport.methods()[-2:] == ["shutdown", "exit"]
        assert transport.closed
        assert client.is_server_terminated()
        assert isinstance(failure(calls[0]), RequestCancelled)

    def test_shutdown_is_idempotent(self):
        client, transport = initialized_client()

        shutdowns = []

        client.add_event_listener("shutdown", shutdowns.append)

        client.shutdown()
        client.shutdown()
        client.teardown("Again")

        assert transport.methods().count("shutdown") == 1
        assert shutdowns == [client]

    def test_shutdown_before_initialized(self):
        spawn = FakeSpawn()

        client = LanguageServerClient(logger, server_config(), spawn=spawn)
        client.initialize()
        client.tick()

        client.shutdown()

        transport = spawn.transports["fake"]

        assert transport.methods() == ["initialize"]
        assert transport.closed

    def test_traffic_after_shutdown_is_dropped(self, caplog):
        client, transport = initialized_client()

        client.shutdown()

        with caplog.at_level(logging.WARNING, logger="tests"):
            assert not client.push_notification("textDocument/didSave", {})
            assert not client.push_request("textDocument/hover", {})

        client.tick()

        assert "Will drop textDocument/didSave" in caplog.text
        assert "textDocument/didSave" not in transport.methods()

    def test_tick_after_terminated(self):
        client, transport = initialized_client()

        client.teardown("Test")

        transport.feed(notification("window/logMessage", {"message": "late"}))

        client.tick()

        assert transport.chunks


class TestDocuments:
    def test_did_open_once(self):
        client, transport = initialized_client()

        client.textDocument_didOpen(did_open())
        client.textDocument_didOpen(did_open())
        client.tick()

        assert transport.methods().count("textDocument/didOpen") == 1
        assert client.is_document_open(DOCUMENT_URI)

    def test_did_close_requires_did_open(self):
        client, transport = initialized_client()

        client.textDocument_didClose({"textDocument": {"uri": DOCUMENT_URI}})
        client.tick()

        assert "textDocument/didClose" not in transport.methods()

    def test_open_close_open(self):
        client, transport = initialized_client()

        client.textDocument_didOpen(did_open())
        client.textDocument_didClose({"textDocument": {"uri": DOCUMENT_URI}})
        client.textDocument_didOpen(did_open())
        client.tick()

        assert transport.methods()[2:] == [
            "textDocument/didOpen",
            "textDocument/didClose",
            "textDocument/didOpen",
        ]

    def test_did_change_requires_did_open(self):
        client, transport = initialized_client()

        change = {
            "textDocument": {"uri": DOCUMENT_URI, "version": 1},
            "contentChanges": [{"text": "import sys\n"}],
        }

        client.textDocument_didChange(change)
        client.tick()

        assert "textDocument/didChange" not in transport.methods()

        client.textDocument_didOpen(did_open())
        client.textDocument_didChange(change)
        client.tick()

        assert transport.methods()[-2:] == ["textDocument/didOpen", "textDocument/didChange"]

    def test_goto(self):
        client, transport = initialized_client()

        client.textDocument_goto("typeDefinition", {"position": {"line": 0, "character": 0}}, None)
        client.tick()

        assert transport.requests("textDocument/typeDefinition")


class TestUri:
    def test_path_to_uri(self):
        assert path_to_uri("/tmp/a b.py") == "file:///tmp/a%20b.py"

    def test_uri_to_path(self):
        assert uri_to_path("file:///tmp/a%20b.py") == "/tmp/a b.py"

"""
HTTP API tests through FastAPI's TestClient.

REST tests observe notifications by subscribing to the hub directly. The
event stream tests open real streaming responses: TestClient returns only
once the app finishes, so a helper thread mutates and then closes the hub,
and the many-subscriber test drives the ASGI app on its own event loop.
"""

import asyncio
import json
import threading
import time

import anyio
import httpx
from fastapi.testclient import TestClient

from taskboard import api
from taskboard.realtime import EventType

from conftest import OTHER_OWNER, OWNER, headers, positions, titles


def event_names(connection):
    names = []
    for frame in connection.drain():
        data_line = [line for line in frame.split("\n") if line.startswith("data: ")][0]
        names.append(json.loads(data_line[len("data: "):])["type"])
    return [name for name in names if name != EventType.PING.wire()]


def create_board(client, name="Board", uid=OWNER):
    response = client.post("/api/v1/boards", json={"name": name}, headers=headers(uid))
    assert response.status_code == 201
    return response.json()


def create_column(client, board_id, name, uid=OWNER):
    response = client.post(f"/api/v1/boards/{board_id}/columns", json={"name": name}, headers=headers(uid))
    assert response.status_code == 201
    return response.json()


def create_task(client, column_id, title, uid=OWNER, **extra):
    response = client.post("/api/v1/tasks", json={"title": title, "column_id": column_id, **extra},
                           headers=headers(uid))
    assert response.status_code == 201
    return response.json()


class TestHealth:

    def test_health_check(self, client, hub):
        hub.subscribe_board(1)
        response = client.get("/healthz")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["database_connected"] is True
        assert data["active_sse_connections"] == 1

    def test_metrics(self, client):
        response = client.get("/api/metrics")
        assert response.status_code == 200
        assert set(response.json()) == {"connections", "database", "retention", "system"}


class TestOwnerIdentity:

    def test_missing_header_rejected(self, client):
        assert client.get("/api/v1/boards").status_code == 400
        assert client.post("/api/v1/boards", json={"name": "x"}).status_code == 400

    def test_blank_header_rejected(self, client):
        assert client.get("/api/v1/boards", headers={"X-Client-Id": "  "}).status_code == 400

    def test_boards_are_per_owner(self, client):
        create_board(client, "Mine")
        create_board(client, "Theirs", uid=OTHER_OWNER)

        mine = client.get("/api/v1/boards", headers=headers()).json()
        assert [b["name"] for b in mine] == ["Mine"]

    def test_foreign_board_is_not_found(self, client):
        theirs = create_board(client, "Theirs", uid=OTHER_OWNER)
        assert client.get(f"/api/v1/boards/{theirs['id']}", headers=headers()).status_code == 404
        assert client.delete(f"/api/v1/boards/{theirs['id']}", headers=headers()).status_code == 404


class TestBoardsApi:

    def test_create_notifies_owner_stream(self, client, hub):
        stream = hub.subscribe_global(OWNER)
        other = hub.subscribe_global(OTHER_OWNER)

        board = create_board(client, "Roadmap")

        assert board["position"] == 0
        assert event_names(stream) == ["boards.created"]
        assert event_names(other) == []

    def test_rename(self, client, hub):
        board = create_board(client)
        stream = hub.subscribe_global(OWNER)

        response = client.put(f"/api/v1/boards/{board['id']}", json={"name": "Renamed"}, headers=headers())

        assert response.json()["name"] == "Renamed"
        assert event_names(stream) == ["boards.updated"]

    def test_empty_name_rejected(self, client):
        response = client.post("/api/v1/boards", json={"name": "   "}, headers=headers())
        assert response.status_code == 422

    def test_reorder(self, client, hub):
        boards = [create_board(client, name) for name in ("One", "Two", "Three")]
        stream = hub.subscribe_global(OWNER)

        response = client.put("/api/v1/boards/reorder", headers=headers(), json=[
            {"id": boards[2]["id"], "position": 0},
            {"id": boards[0]["id"], "position": 1},
            {"id": boards[1]["id"], "position": 2},
        ])

        assert response.status_code == 204
        listed = client.get("/api/v1/boards", headers=headers()).json()
        assert [b["name"] for b in listed] == ["Three", "One", "Two"]
        assert event_names(stream) == ["boards.updated"]

    def test_reorder_unchanged_emits_nothing(self, client, hub):
        boards = [create_board(client, name) for name in ("One", "Two")]
        stream = hub.subscribe_global(OWNER)

        client.put("/api/v1/boards/reorder", headers=headers(),
                   json=[{"id": b["id"], "position": b["position"]} for b in boards])

        assert event_names(stream) == []

    def test_delete_compacts_and_notifies(self, client, hub, store):
        boards = [create_board(client, name) for name in ("One", "Two", "Three")]
        column = create_column(client, boards[0]["id"], "Col")
        task = create_task(client, column["id"], "Has file")
        store.save(task["id"], "notes.txt", b"hello")
        stream = hub.subscribe_global(OWNER)

        assert client.delete(f"/api/v1/boards/{boards[0]['id']}", headers=headers()).status_code == 204

        listed = client.get("/api/v1/boards", headers=headers()).json()
        assert [b["name"] for b in listed] == ["Two", "Three"]
        assert positions(listed) == [0, 1]
        assert event_names(stream) == ["boards.deleted"]
        assert store.list_files(task["id"]) == []


class TestColumnsApi:

    def test_create_and_list(self, client, hub):
        board = create_board(client)
        stream = hub.subscribe_board(board["id"])

        for name in ("Todo", "Doing", "Done"):
            create_column(client, board["id"], name)

        listed = client.get(f"/api/v1/boards/{board['id']}/columns", headers=headers()).json()
        assert [c["name"] for c in listed] == ["Todo", "Doing", "Done"]
        assert positions(listed) == [0, 1, 2]
        assert event_names(stream) == ["columns.changed"] * 3

    def test_capacity_limit_is_conflict(self, client):
        board = create_board(client)
        for index in range(5):
            create_column(client, board["id"], f"C{index}")

        response = client.post(f"/api/v1/boards/{board['id']}/columns", json={"name": "C5"}, headers=headers())
        assert response.status_code == 409

    def test_move_column(self, client, hub):
        board = create_board(client)
        columns = [create_column(client, board["id"], name) for name in ("A", "B", "C")]
        stream = hub.subscribe_board(board["id"])

        response = client.put(f"/api/v1/boards/{board['id']}/columns/move", headers=headers(),
                              json={"kanbanColumnId": columns[0]["id"], "targetPosition": 2})

        assert response.status_code == 204
        listed = client.get(f"/api/v1/boards/{board['id']}/columns", headers=headers()).json()
        assert [c["name"] for c in listed] == ["B", "C", "A"]
        assert event_names(stream) == ["columns.changed"]

    def test_noop_move_emits_nothing(self, client, hub):
        board = create_board(client)
        columns = [create_column(client, board["id"], name) for name in ("A", "B")]
        stream = hub.subscribe_board(board["id"])

        client.put(f"/api/v1/boards/{board['id']}/columns/move", headers=headers(),
                   json={"kanbanColumnId": columns[1]["id"], "targetPosition": 1})

        assert event_names(stream) == []

    def test_column_of_other_board_not_found(self, client):
        first = create_board(client, "First")
        second = create_board(client, "Second")
        column = create_column(client, first["id"], "Col")

        response = client.get(f"/api/v1/boards/{second['id']}/columns/{column['id']}", headers=headers())
        assert response.status_code == 404

    def test_delete_column(self, client):
        board = create_board(client)
        columns = [create_column(client, board["id"], name) for name in ("A", "B", "C")]

        response = client.delete(f"/api/v1/boards/{board['id']}/columns/{columns[1]['id']}", headers=headers())

        assert response.status_code == 204
        listed = client.get(f"/api/v1/boards/{board['id']}/columns", headers=headers()).json()
        assert [c["name"] for c in listed] == ["A", "C"]
        assert positions(listed) == [0, 1]


class TestTasksApi:

    def _setup(self, client):
        board = create_board(client)
        todo = create_column(client, board["id"], "Todo")
        done = create_column(client, board["id"], "Done")
        tasks = [create_task(client, todo["id"], title) for title in ("A", "B", "C")]
        return board, todo, done, tasks

    def _column_tasks(self, client, column_id):
        return client.get(f"/api/v1/tasks/column/{column_id}", headers=headers()).json()

    def test_create_task_fields(self, client):
        board, todo, _, _ = self._setup(client)
        task = create_task(client, todo["id"], "Ship", description="soon", due_date="2026-11-01")

        assert task["position"] == 3
        assert task["due_date"] == "2026-11-01"
        assert task["board_id"] == board["id"]
        assert task["attachments"] == []

    def test_create_in_foreign_column(self, client):
        _, todo, _, _ = self._setup(client)
        response = client.post("/api/v1/tasks", json={"title": "x", "column_id": todo["id"]},
                               headers=headers(OTHER_OWNER))
        assert response.status_code == 404

    def test_move_task_lands_at_tail(self, client, hub):
        board, todo, done, tasks = self._setup(client)
        create_task(client, done["id"], "X")
        stream = hub.subscribe_board(board["id"])

        response = client.put("/api/v1/tasks/move", headers=headers(), json={
            "taskId": tasks[0]["id"], "targetColumnId": done["id"], "targetPosition": 0,
        })

        assert response.status_code == 204
        assert titles(self._column_tasks(client, done["id"])) == ["X", "A"]
        remaining = self._column_tasks(client, todo["id"])
        assert titles(remaining) == ["B", "C"]
        assert positions(remaining) == [0, 1]
        assert event_names(stream) == ["tasks.changed"]

    def test_move_into_same_column_emits_nothing(self, client, hub):
        board, todo, _, tasks = self._setup(client)
        stream = hub.subscribe_board(board["id"])

        response = client.put("/api/v1/tasks/move", headers=headers(),
                              json={"taskId": tasks[1]["id"], "targetColumnId": todo["id"]})

        assert response.status_code == 204
        assert event_names(stream) == []

    def test_move_to_missing_column(self, client):
        _, _, _, tasks = self._setup(client)
        response = client.put("/api/v1/tasks/move", headers=headers(),
                              json={"taskId": tasks[0]["id"], "targetColumnId": 999999})
        assert response.status_code == 404

    def test_reorder_tasks(self, client, hub):
        board, todo, _, tasks = self._setup(client)
        stream = hub.subscribe_board(board["id"])

        response = client.put("/api/v1/tasks/reorder", headers=headers(), json=[
            {"id": tasks[2]["id"], "position": 0},
            {"id": tasks[0]["id"], "position": 1},
            {"id": tasks[1]["id"], "position": 2},
        ])

        assert response.status_code == 204
        assert titles(self._column_tasks(client, todo["id"])) == ["C", "A", "B"]
        assert event_names(stream) == ["tasks.changed"]

    def test_update_task_moves_column(self, client):
        _, todo, done, tasks = self._setup(client)
        response = client.put(f"/api/v1/tasks/{tasks[0]['id']}", headers=headers(), json={
            "title": "A!", "completed": True, "column_id": done["id"],
        })

        assert response.status_code == 200
        assert response.json()["column_id"] == done["id"]
        assert response.json()["completed"] is True
        assert positions(self._column_tasks(client, todo["id"])) == [0, 1]

    def test_delete_task(self, client, hub):
        board, todo, _, tasks = self._setup(client)
        stream = hub.subscribe_board(board["id"])

        assert client.delete(f"/api/v1/tasks/{tasks[1]['id']}", headers=headers()).status_code == 204

        remaining = self._column_tasks(client, todo["id"])
        assert titles(remaining) == ["A", "C"]
        assert positions(remaining) == [0, 1]
        assert event_names(stream) == ["tasks.changed"]
        assert client.get(f"/api/v1/tasks/{tasks[1]['id']}", headers=headers()).status_code == 404

    def test_delete_all_tasks_in_column(self, client):
        _, todo, _, _ = self._setup(client)
        assert client.delete(f"/api/v1/tasks/column/{todo['id']}", headers=headers()).status_code == 204
        assert self._column_tasks(client, todo["id"]) == []

    def test_list_all_owner_tasks(self, client):
        _, _, done, _ = self._setup(client)
        create_task(client, done["id"], "D")
        listed = client.get("/api/v1/tasks", headers=headers()).json()
        assert titles(listed) == ["A", "B", "C", "D"]


class TestAttachmentsApi:

    def _task(self, client):
        board = create_board(client)
        column = create_column(client, board["id"], "Col")
        return create_task(client, column["id"], "With files")

    def test_upload_download_delete(self, client, store):
        task = self._task(client)

        response = client.put(f"/api/v1/tasks/{task['id']}/attachments/report v1.txt",
                              content=b"contents", headers=headers())
        assert response.status_code == 200
        assert response.json()["attachments"] == ["report_v1.txt"]

        download = client.get(f"/api/v1/tasks/{task['id']}/attachments/report_v1.txt", headers=headers())
        assert download.status_code == 200
        assert download.content == b"contents"

        removed = client.delete(f"/api/v1/tasks/{task['id']}/attachments/report_v1.txt", headers=headers())
        assert removed.json()["attachments"] == []
        assert store.list_files(task["id"]) == []

    def test_attachments_mirror_task_folder(self, client, store):
        task = self._task(client)
        store.save(task["id"], "existing.txt", b"already there")

        response = client.put(f"/api/v1/tasks/{task['id']}/attachments/new.txt",
                              content=b"new", headers=headers())

        assert response.json()["attachments"] == ["existing.txt", "new.txt"]

    def test_download_missing(self, client):
        task = self._task(client)
        response = client.get(f"/api/v1/tasks/{task['id']}/attachments/none.txt", headers=headers())
        assert response.status_code == 404


class TestEventStreams:

    def test_global_stream_requires_uid(self, client):
        assert client.get("/api/v1/events").status_code == 400

    def test_board_stream_of_foreign_board(self, client):
        theirs = create_board(client, "Theirs", uid=OTHER_OWNER)
        response = client.get(f"/api/v1/events/board/{theirs['id']}", headers=headers())
        assert response.status_code == 404

    def test_board_stream_delivers_handshake_and_events(self, client, hub):
        board = create_board(client)
        column = create_column(client, board["id"], "Col")
        errors = []

        def mutate_then_close():
            try:
                deadline = time.time() + 10
                while hub.connection_count() < 1 and time.time() < deadline:
                    time.sleep(0.01)
                response = TestClient(api.app).post(
                    "/api/v1/tasks", json={"title": "Streamed", "column_id": column["id"]}, headers=headers()
                )
                assert response.status_code == 201
            except AssertionError as e:
                errors.append(e)
            finally:
                hub.close_all()

        helper = threading.Thread(target=mutate_then_close)
        helper.start()
        response = client.get(f"/api/v1/events/board/{board['id']}", headers=headers())
        helper.join()

        assert errors == []
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.startswith("event: ping\nretry: 3000\n")
        assert "event: tasks.changed\nretry: 3000\n" in response.text
        assert f'"boardId":{board["id"]}' in response.text
        assert hub.connection_count() == 0


class TestManyStreams:
    """Open streams must not hold worker threads away from REST requests."""

    STREAMS = 60

    def _scope(self, path):
        return {
            "type": "http",
            "asgi": {"version": "3.0"},
            "http_version": "1.1",
            "method": "GET",
            "scheme": "http",
            "path": path,
            "raw_path": path.encode(),
            "query_string": b"",
            "root_path": "",
            "headers": [(b"x-client-id", OWNER.encode())],
            "client": ("testclient", 50000),
            "server": ("testserver", 80),
        }

    async def _open_stream(self, path, disconnect, body):
        requested = False

        async def receive():
            nonlocal requested
            if not requested:
                requested = True
                return {"type": "http.request", "body": b"", "more_body": False}
            await disconnect.wait()
            return {"type": "http.disconnect"}

        async def send(message):
            if message["type"] == "http.response.body":
                chunk = message.get("body", b"")
                body.append(chunk.decode() if isinstance(chunk, bytes) else chunk)

        await api.app(self._scope(path), receive, send)

    async def _until(self, condition, timeout=10.0):
        deadline = time.time() + timeout
        while not condition():
            assert time.time() < deadline, "condition not reached in time"
            await asyncio.sleep(0.01)

    def test_rest_served_while_many_streams_open(self, client, hub):
        board = create_board(client)
        column = create_column(client, board["id"], "Col")
        path = f"/api/v1/events/board/{board['id']}"

        async def scenario():
            limiter = anyio.to_thread.current_default_thread_limiter()
            assert self.STREAMS > limiter.total_tokens

            disconnect = asyncio.Event()
            bodies = [[] for _ in range(self.STREAMS)]
            streams = [asyncio.ensure_future(self._open_stream(path, disconnect, body)) for body in bodies]

            await self._until(lambda: all("event: ping" in "".join(body) for body in bodies))
            assert hub.connection_count() == self.STREAMS
            assert limiter.borrowed_tokens == 0

            transport = httpx.ASGITransport(app=api.app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as rest:
                response = await asyncio.wait_for(
                    rest.post("/api/v1/tasks", json={"title": "Busy", "column_id": column["id"]},
                              headers=headers()),
                    timeout=10,
                )
            assert response.status_code == 201

            await self._until(lambda: all("event: tasks.changed" in "".join(body) for body in bodies))

            disconnect.set()
            await asyncio.wait_for(asyncio.gather(*streams), timeout=10)

        asyncio.run(scenario())

        assert hub.connection_count() == 0

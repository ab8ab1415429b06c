"""HTTP contract tests: routes, problem+json errors and request ids."""

from __future__ import annotations

from hierarchy_service.http.problem import PROBLEM_MEDIA_TYPE

API = "/api/v1"


def _create_episode(client) -> int:
    resp = client.post(f"{API}/episodes", json={"title": "Pilot", "owner_id": "owner-1", "share_token": "s3cret"})
    assert resp.status_code == 201, resp.text
    return int(resp.json()["episode_id"])


def _add(client, alias: str, container_id: int, attributes: dict, position=None) -> dict:
    body: dict = {"attributes": attributes}
    if position is not None:
        body["position"] = position
    resp = client.post(f"{API}/containers/{alias}/{container_id}/entities", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()


def _titles(client, alias: str, container_id: int) -> list:
    resp = client.get(f"{API}/containers/{alias}/{container_id}/entities")
    assert resp.status_code == 200, resp.text
    return [row["title"] for row in resp.json()["items"]]


def test_episode_tree_hides_excluded_attributes(client) -> None:
    episode_id = _create_episode(client)
    part = _add(client, "parts", episode_id, {"title": "Act 1"})
    _add(client, "items", part["id"], {"title": "Scene"})

    resp = client.get(f"{API}/episodes/{episode_id}")
    assert resp.status_code == 200
    tree = resp.json()
    assert tree["title"] == "Pilot"
    assert "share_token" not in tree
    parts = tree["children"]["part"]
    assert [p["title"] for p in parts] == ["Act 1"]
    assert parts[0]["children"]["item"][0]["title"] == "Scene"


def test_insert_move_reorder_and_delete_keep_positions_dense(client) -> None:
    episode_id = _create_episode(client)
    a = _add(client, "parts", episode_id, {"title": "A"})
    b = _add(client, "parts", episode_id, {"title": "B"})
    c = _add(client, "parts", episode_id, {"title": "C"}, position=0)
    assert c["position"] == 0
    assert c["shifted"] == 2
    assert _titles(client, "parts", episode_id) == ["C", "A", "B"]

    moved = client.patch(f"{API}/entities/parts/{c['id']}/position", json={"position": 2})
    assert moved.status_code == 200
    assert moved.json()["position"] == 2
    assert _titles(client, "parts", episode_id) == ["A", "B", "C"]

    reordered = client.put(f"{API}/containers/parts/{episode_id}/order", json={"ordered_ids": [b["id"], c["id"], a["id"]]})
    assert reordered.status_code == 200
    assert [i["position"] for i in reordered.json()["items"]] == [0, 1, 2]
    assert _titles(client, "parts", episode_id) == ["B", "C", "A"]

    deleted = client.delete(f"{API}/entities/parts/{c['id']}")
    assert deleted.status_code == 204
    rows = client.get(f"{API}/containers/parts/{episode_id}/entities").json()["items"]
    assert [(r["title"], r["position"]) for r in rows] == [("B", 0), ("A", 1)]


def test_reorder_mismatch_is_unprocessable(client) -> None:
    episode_id = _create_episode(client)
    a = _add(client, "parts", episode_id, {"title": "A"})
    _add(client, "parts", episode_id, {"title": "B"})

    resp = client.put(f"{API}/containers/parts/{episode_id}/order", json={"ordered_ids": [a["id"]]})
    assert resp.status_code == 422
    assert resp.headers["content-type"].startswith(PROBLEM_MEDIA_TYPE)
    assert resp.json()["code"] == "reorder_set_mismatch"
    assert _titles(client, "parts", episode_id) == ["A", "B"]


def test_unknown_kind_and_missing_container_are_not_found(client) -> None:
    resp = client.get(f"{API}/containers/seasons/1/entities")
    assert resp.status_code == 404
    assert resp.json()["code"] == "unknown_kind"

    resp = client.get(f"{API}/containers/parts/987654/entities")
    assert resp.status_code == 404
    assert resp.json()["code"] == "episode_not_found"

    resp = client.patch(f"{API}/entities/items/987654/position", json={"position": 0})
    assert resp.status_code == 404
    assert resp.json()["code"] == "item_not_found"


def test_invalid_bodies_are_rejected(client) -> None:
    episode_id = _create_episode(client)
    resp = client.post(f"{API}/containers/parts/{episode_id}/entities", json={"position": "first", "attributes": {"title": "x"}})
    assert resp.status_code == 422
    assert resp.json()["code"] == "request_invalid"

    resp = client.post(f"{API}/containers/parts/{episode_id}/entities", json={"attributes": {"colour": "red"}})
    assert resp.status_code == 422
    assert resp.json()["code"] == "unknown_attributes"

    resp = client.post(f"{API}/episodes", json={"title": "  ", "owner_id": "owner-1"})
    assert resp.status_code == 422
    assert resp.json()["code"] == "title_required"


def test_missing_required_attribute_is_unprocessable(client) -> None:
    episode_id = _create_episode(client)
    resp = client.post(f"{API}/containers/parts/{episode_id}/entities", json={"attributes": {"summary": "x"}})
    assert resp.status_code == 422
    assert resp.json()["code"] == "missing_attributes"
    assert _titles(client, "parts", episode_id) == []


def test_out_of_range_positions_are_clamped(client) -> None:
    episode_id = _create_episode(client)
    a = _add(client, "parts", episode_id, {"title": "A"})
    b = _add(client, "parts", episode_id, {"title": "B"})

    first = _add(client, "parts", episode_id, {"title": "First"}, position=-3)
    assert first["position"] == 0
    last = _add(client, "parts", episode_id, {"title": "Last"}, position=99)
    assert last["position"] == 3
    assert _titles(client, "parts", episode_id) == ["First", "A", "B", "Last"]

    moved = client.patch(f"{API}/entities/parts/{b['id']}/position", json={"position": -1})
    assert moved.status_code == 200
    assert moved.json()["position"] == 0
    moved = client.patch(f"{API}/entities/parts/{a['id']}/position", json={"position": 50})
    assert moved.json()["position"] == 3
    assert _titles(client, "parts", episode_id) == ["B", "First", "Last", "A"]


def test_request_id_is_echoed_or_generated(client) -> None:
    resp = client.get("/health", headers={"X-Request-Id": "req-123"})
    assert resp.headers["X-Request-Id"] == "req-123"
    generated = client.get("/health").headers.get("X-Request-Id")
    assert generated
    assert generated != "req-123"


def test_health_reports_database(client) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert resp.json()["db"] is True


def test_duplicate_endpoint_accepts_and_job_completes(client, seed_episode) -> None:
    ids = seed_episode(shape=((2,),), fields=1, media_per_block=1)
    resp = client.post(f"{API}/episodes/{ids['episode']}/duplicates", headers={"X-Actor-Id": "actor-5"})
    assert resp.status_code == 202
    job_id = resp.json()["job_id"]
    assert resp.headers["Location"] == f"{API}/duplication-jobs/{job_id}"

    job = client.get(f"{API}/duplication-jobs/{job_id}").json()
    assert job["status"] == "succeeded"
    assert job["outcome"] == "succeeded"
    assert job["attachments"]["succeeded"] == 2
    assert job["result_episode_id"] != ids["episode"]

    copy = client.get(f"{API}/episodes/{job['result_episode_id']}").json()
    assert "share_token" not in copy
    assert len(copy["children"]["part"][0]["children"]["item"][0]["children"]["block"]) == 2

    again = client.post(f"{API}/episodes/{ids['episode']}/duplicates", headers={"X-Actor-Id": "actor-5"})
    assert again.json()["job_id"] == job_id


def test_duplicate_requires_actor_header(client, seed_episode) -> None:
    ids = seed_episode()
    resp = client.post(f"{API}/episodes/{ids['episode']}/duplicates")
    assert resp.status_code == 422
    assert resp.json()["code"] == "request_invalid"


def test_job_endpoints_map_domain_errors(client, seed_episode) -> None:
    resp = client.get(f"{API}/duplication-jobs/no-such-job")
    assert resp.status_code == 404
    assert resp.json()["code"] == "job_not_found"

    ids = seed_episode()
    job_id = client.post(f"{API}/episodes/{ids['episode']}/duplicates", headers={"X-Actor-Id": "actor-5"}).json()["job_id"]
    resp = client.post(f"{API}/duplication-jobs/{job_id}/cancel")
    assert resp.status_code == 409
    assert resp.json()["code"] == "job_not_cancellable"


def test_attachment_retry_endpoint_repairs_broken_copies(client, blob_store, seed_episode) -> None:
    ids = seed_episode(shape=((1,),), media_per_block=1)
    source_key = f"uploads/{ids['block'][0]}/clip-0.mp4"
    payload = blob_store.get(source_key)
    blob_store.delete(source_key)

    job_id = client.post(f"{API}/episodes/{ids['episode']}/duplicates", headers={"X-Actor-Id": "actor-5"}).json()["job_id"]
    job = client.get(f"{API}/duplication-jobs/{job_id}").json()
    assert job["outcome"] == "degraded"
    assert len(job["attachments"]["broken"]) == 1

    blob_store.put(source_key, payload)
    resp = client.post(f"{API}/duplication-jobs/{job_id}/attachments/retry")
    assert resp.status_code == 200
    assert len(resp.json()["requeued_task_ids"]) == 1
    assert client.get(f"{API}/duplication-jobs/{job_id}").json()["outcome"] == "succeeded"


def test_startup_resumes_pending_attachment_copies(app_config, inline_queue, blob_store, engine, seed_episode) -> None:
    from fastapi.testclient import TestClient
    from sqlalchemy import text as sql_text

    from hierarchy_service.logic.duplication_executor import DuplicationExecutor
    from hierarchy_service.main import create_app

    ids = seed_episode(shape=((1,),), media_per_block=1)
    # Rows committed with pending tasks whose queue messages never went out
    result = DuplicationExecutor(location_prefix="test-blobs").run(ids["episode"], "actor-5", job_id="lost-job")
    task_id = result.attachment_task_ids[0]

    app = create_app(config=app_config, job_queue=inline_queue, blob_store=blob_store)
    with TestClient(app):
        with engine.connect() as conn:
            status, dest = conn.execute(
                sql_text("SELECT status, dest_location FROM attachment_copy_task WHERE task_id = :t"), {"t": task_id}
            ).one()
    assert status == "succeeded"
    assert blob_store.get(dest) == blob_store.get(f"uploads/{ids['block'][0]}/clip-0.mp4")

"""Configuration loading and error mapping tests."""

from __future__ import annotations

import json

import pytest
from pydantic import ValidationError as PydanticValidationError

from hierarchy_service.config import MAX_DEPTH_CEILING, AttachmentSettings, load_config
from hierarchy_service.http.problem import problem_for
from hierarchy_service.logic.errors import (
    AttemptTimeoutError,
    ConflictError,
    IntegrityError,
    NotFoundError,
    ValidationError,
    is_retryable,
)


@pytest.fixture()
def isolated_config_dir(tmp_path, monkeypatch):
    """Run load_config from an empty directory so only the test's sources apply."""
    monkeypatch.chdir(tmp_path)
    for key in (
        "DUPLICATION_MAX_DEPTH",
        "DUPLICATION_MAX_ATTEMPTS",
        "ATTACHMENTS_LOCATION_PREFIX",
        "POSITIONS_MAX_ATTEMPTS",
    ):
        monkeypatch.delenv(key, raising=False)
    return tmp_path


def test_defaults_apply_without_sources(isolated_config_dir) -> None:
    cfg = load_config()
    assert cfg.duplication.max_depth == MAX_DEPTH_CEILING
    assert cfg.duplication.max_attempts == 5
    assert cfg.positions.max_attempts == 3
    assert cfg.attachments.location_prefix == "blobs"


def test_env_overrides_config_files_and_json(isolated_config_dir, monkeypatch) -> None:
    (isolated_config_dir / "service_config.json").write_text(
        json.dumps({"duplication": {"max_depth": 3, "max_attempts": 7}}), encoding="utf-8"
    )
    config_dir = isolated_config_dir / "config"
    config_dir.mkdir()
    (config_dir / "duplication.max_attempts").write_text("4\n", encoding="utf-8")
    monkeypatch.setenv("DUPLICATION_MAX_DEPTH", "6")

    cfg = load_config()
    assert cfg.duplication.max_depth == 6
    assert cfg.duplication.max_attempts == 4


def test_depth_above_ceiling_is_rejected(isolated_config_dir, monkeypatch) -> None:
    monkeypatch.setenv("DUPLICATION_MAX_DEPTH", str(MAX_DEPTH_CEILING + 1))
    with pytest.raises(PydanticValidationError):
        load_config()


def test_location_prefix_is_normalised() -> None:
    assert AttachmentSettings(location_prefix="/copies/").location_prefix == "copies"
    with pytest.raises(PydanticValidationError):
        AttachmentSettings(location_prefix=" / ")


@pytest.mark.parametrize(
    "exc, status",
    [
        (NotFoundError("gone", code="episode_not_found"), 404),
        (ValidationError("bad", code="reorder_set_mismatch"), 422),
        (ConflictError("busy"), 409),
        (AttemptTimeoutError("slow"), 409),
        (IntegrityError("corrupt", code="positions_not_contiguous"), 500),
    ],
)
def test_domain_errors_map_to_problem_status(exc, status) -> None:
    got_status, body = problem_for(exc)
    assert got_status == status
    assert body["status"] == status
    assert body["code"] == exc.code


def test_problem_context_is_scalar_and_hidden_for_server_errors() -> None:
    _, body = problem_for(ValidationError("bad", code="unknown_attributes", kind="part", attributes=["x"]))
    assert body["context"] == {"kind": "part"}
    _, body = problem_for(IntegrityError("corrupt", container_id=1))
    assert "context" not in body


def test_retry_classification_follows_error_class() -> None:
    assert is_retryable(ConflictError("x"))
    assert is_retryable(AttemptTimeoutError("x"))
    assert not is_retryable(ValidationError("x"))
    assert not is_retryable(NotFoundError("x"))
    assert not is_retryable(IntegrityError("x"))

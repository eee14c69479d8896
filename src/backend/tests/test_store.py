"""Tests for the convergent apply helpers and Kubernetes error translation."""

import pytest
from kubernetes.client.rest import ApiException

from previewd.errors import ConflictError, NotFoundError, TransientError, ValidationError
from previewd.kube.store import (
    RESOURCE_QUOTA,
    ApplyResult,
    _translate,
    create_or_update,
    delete_if_present,
    exists,
    set_metadata,
)


def _set_hard(value: str):
    def mutate(body: dict) -> None:
        body.setdefault("spec", {})["hard"] = {"requests.cpu": value}

    return mutate


class TestCreateOrUpdate:
    async def test_created_updated_unchanged(self, cluster):
        assert await create_or_update(cluster, RESOURCE_QUOTA, "q", "ns", _set_hard("1")) is ApplyResult.CREATED
        assert await create_or_update(cluster, RESOURCE_QUOTA, "q", "ns", _set_hard("1")) is ApplyResult.UNCHANGED
        assert await create_or_update(cluster, RESOURCE_QUOTA, "q", "ns", _set_hard("2")) is ApplyResult.UPDATED
        assert cluster.peek(RESOURCE_QUOTA, "q", "ns")["spec"]["hard"] == {"requests.cpu": "2"}

    async def test_retries_after_version_conflict(self, cluster):
        await create_or_update(cluster, RESOURCE_QUOTA, "q", "ns", _set_hard("1"))
        cluster.fail[("replace", "ResourceQuota")] = ConflictError("stale")

        result = await create_or_update(cluster, RESOURCE_QUOTA, "q", "ns", _set_hard("2"))

        assert result is ApplyResult.UPDATED
        assert cluster.peek(RESOURCE_QUOTA, "q", "ns")["spec"]["hard"] == {"requests.cpu": "2"}

    async def test_create_race_falls_back_to_update(self, cluster):
        cluster.fail[("create", "ResourceQuota")] = ConflictError("exists")
        cluster.put(RESOURCE_QUOTA, {"metadata": {"name": "q", "namespace": "ns"}})

        # The record appeared between our read and our create.
        async def racing_get(kind, name, namespace=None, _orig=cluster.get):
            cluster.get = _orig
            raise NotFoundError("not yet")

        cluster.get = racing_get
        result = await create_or_update(cluster, RESOURCE_QUOTA, "q", "ns", _set_hard("1"))
        assert result is ApplyResult.UPDATED

    async def test_gives_up_after_repeated_conflicts(self, cluster):
        await create_or_update(cluster, RESOURCE_QUOTA, "q", "ns", _set_hard("1"))

        async def always_conflict(kind, body):
            raise ConflictError("stale")

        cluster.replace = always_conflict
        with pytest.raises(TransientError):
            await create_or_update(cluster, RESOURCE_QUOTA, "q", "ns", _set_hard("2"))


class TestDeleteHelpers:
    async def test_delete_if_present(self, cluster):
        await create_or_update(cluster, RESOURCE_QUOTA, "q", "ns", _set_hard("1"))
        assert await exists(cluster, RESOURCE_QUOTA, "q", "ns")
        assert await delete_if_present(cluster, RESOURCE_QUOTA, "q", "ns") is True
        assert await delete_if_present(cluster, RESOURCE_QUOTA, "q", "ns") is False
        assert not await exists(cluster, RESOURCE_QUOTA, "q", "ns")


class TestSetMetadata:
    def test_merges_and_keeps_foreign_keys(self):
        body = {"metadata": {"labels": {"a": "1"}, "annotations": {"x": "1"}}}
        set_metadata(body, {"b": "2"}, {"y": "2"})
        assert body["metadata"]["labels"] == {"a": "1", "b": "2"}
        assert body["metadata"]["annotations"] == {"x": "1", "y": "2"}

    def test_creates_metadata(self):
        body: dict = {}
        set_metadata(body, {"b": "2"})
        assert body == {"metadata": {"labels": {"b": "2"}}}


class TestTranslate:
    @pytest.mark.parametrize(
        "status,expected",
        [
            (404, NotFoundError),
            (409, ConflictError),
            (400, ValidationError),
            (403, ValidationError),
            (422, ValidationError),
            (429, TransientError),
            (500, TransientError),
            (503, TransientError),
        ],
    )
    def test_status_mapping(self, status, expected):
        exc = _translate(ApiException(status=status, reason="boom"), "ResourceQuota ns/q")
        assert isinstance(exc, expected)
        assert "ResourceQuota ns/q" in exc.message

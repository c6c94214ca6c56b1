from __future__ import annotations

from typing import Any

import pytest

from kube2vulcan.src.errors import StoreError


class FakeEtcd:
    """In-memory stand-in for :class:`EtcdKeysClient` with etcd v2 directory semantics."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.fail_set_keys: set[str] = set()
        self.fail_delete_keys: set[str] = set()
        self.fail_list_keys: set[str] = set()
        self.calls: list[tuple[str, str]] = []

    def set(self, key: str, value: str) -> None:
        self.calls.append(("set", key))
        if key in self.fail_set_keys:
            raise StoreError(f"boom on {key}")
        self.data[key] = value

    def get(self, key: str) -> dict[str, Any] | None:
        if key in self.data:
            return {"key": key, "value": self.data[key]}
        children = self.list_children(key)
        if not children:
            return None
        return {"key": key, "dir": True, "nodes": [{"key": child} for child in children]}

    def list_children(self, key: str) -> list[str]:
        self.calls.append(("list", key))
        if key in self.fail_list_keys:
            raise StoreError(f"boom on {key}")
        prefix = key.rstrip("/") + "/"
        children: list[str] = []
        for existing in sorted(self.data):
            if not existing.startswith(prefix):
                continue
            child = prefix + existing[len(prefix):].split("/", 1)[0]
            if child not in children:
                children.append(child)
        return children

    def delete(self, key: str, recursive: bool = False) -> bool:
        self.calls.append(("delete", key))
        if key in self.fail_delete_keys:
            raise StoreError(f"boom on {key}")
        prefix = key.rstrip("/") + "/"
        doomed = [k for k in self.data if k == key or (recursive and k.startswith(prefix))]
        for k in doomed:
            del self.data[k]
        return bool(doomed)

    def keys_under(self, prefix: str) -> list[str]:
        return sorted(k for k in self.data if k.startswith(prefix))


@pytest.fixture
def etcd() -> FakeEtcd:
    return FakeEtcd()

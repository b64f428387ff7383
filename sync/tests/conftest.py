"""Shared fixtures: an in-memory record store and a fixed vault key."""

import copy

import pytest

from errors import PersistenceError

TEST_KEY = "k" * 32


class MemoryStore:
    """Dict-backed find_one / insert / update / delete, one list of rows per table."""

    def __init__(self):
        self.tables = {}
        self.fail_on = set()  # (operation, table) pairs that raise PersistenceError
        self.calls = []

    def _rows(self, table):
        return self.tables.setdefault(table, [])

    def _check(self, op, table):
        self.calls.append((op, table))
        if (op, table) in self.fail_on:
            raise PersistenceError(f"{op} on {table} unavailable")

    @staticmethod
    def _matches(row, filters):
        return all(row.get(k) == v for k, v in filters.items())

    def find_one(self, table, filters):
        self._check("find_one", table)
        for row in self._rows(table):
            if self._matches(row, filters):
                return copy.deepcopy(row)
        return None

    def insert(self, table, record):
        self._check("insert", table)
        self._rows(table).append(copy.deepcopy(record))

    def update(self, table, filters, patch):
        self._check("update", table)
        count = 0
        for row in self._rows(table):
            if self._matches(row, filters):
                row.update(copy.deepcopy(patch))
                count += 1
        return count

    def delete(self, table, filters):
        self._check("delete", table)
        before = len(self._rows(table))
        self.tables[table] = [r for r in self._rows(table) if not self._matches(r, filters)]
        return before - len(self.tables[table])


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def vault(store):
    from vault import CredentialVault
    return CredentialVault(store, TEST_KEY)

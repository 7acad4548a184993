"""Tests for the per-key undo journal behind engine rollback."""

from payguard.journal import UndoJournal


def test_rollback_restores_first_value_and_drops_new_keys():
    journal = UndoJournal()
    data = {"a": 1}
    journal.begin()
    journal.remember(data, "a")
    data["a"] = 2
    journal.remember(data, "a")
    data["a"] = 3
    journal.remember(data, "b")
    data["b"] = 9
    journal.rollback()
    assert data == {"a": 1}
    assert not journal.active


def test_copier_protects_in_place_edits():
    journal = UndoJournal()
    data = {"owner": {1, 2}}
    journal.begin()
    journal.remember(data, "owner", copier=set)
    data["owner"].add(3)
    journal.rollback()
    assert data == {"owner": {1, 2}}


def test_inactive_journal_records_nothing():
    journal = UndoJournal()
    data = {"a": 1}
    journal.remember(data, "a")
    data["a"] = 2
    journal.begin()
    journal.rollback()
    assert data == {"a": 2}


def test_commit_keeps_changes():
    journal = UndoJournal()
    data = {}
    journal.begin()
    journal.remember(data, "a")
    data["a"] = 1
    journal.commit()
    journal.rollback()
    assert data == {"a": 1}

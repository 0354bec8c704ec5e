import json
from datetime import datetime, timedelta, timezone

import pytest

from optimizer import history as history_module
from optimizer.errors import OptimizerError
from optimizer.history import (
    MIGRATIONS,
    HistoryItem,
    HistoryStore,
    create_history_engine,
    round_half_up,
    savings_percent,
)
from optimizer.options import Preset


def item(original, compressed, name="file.pdf", preset=Preset.MAIL, **kwargs):
    return HistoryItem(
        file_name=name,
        original_size=original,
        compressed_size=compressed,
        preset_used=preset,
        **kwargs,
    )


def test_aggregates_fixture(history):
    history.append(item(300_000_000, 92_000_000))
    history.append(item(150_000_000, 45_000_000))
    assert [i.savings_percent for i in history.all()] == [70, 69]
    assert history.total_saved_bytes == 313_000_000
    assert history.average_savings_percent == 70
    assert history.best_savings_percent == 70


def test_empty_store_defaults(history):
    assert history.all() == []
    assert history.total_saved_bytes == 0
    assert history.average_savings_percent == 68
    assert history.best_savings_percent is None
    assert history.stats() == {
        "count": 0,
        "total_saved_bytes": 0,
        "average_savings_percent": 68,
        "best_savings_percent": None,
    }


@pytest.mark.parametrize("original,compressed,expected", [
    (100, 150, 0),
    (100, 0, 100),
    (0, 10, 0),
    (1000, 990, 1),
    (200, 100, 50),
])
def test_savings_percent_is_clamped(original, compressed, expected):
    assert savings_percent(original, compressed) == expected
    assert 0 <= item(original, compressed).savings_percent <= 100


def test_growth_counts_as_zero_saved(history):
    history.append(item(100, 150))
    assert history.total_saved_bytes == 0
    assert history.best_savings_percent == 0


def test_round_half_up():
    assert round_half_up(69.5) == 70
    assert round_half_up(68.5) == 69
    assert round_half_up(68.49) == 68


def test_order_is_most_recent_first(history):
    for name in ("a", "b", "c"):
        history.append(item(10, 5, name=name))
    assert [i.file_name for i in history.all()] == ["c", "b", "a"]
    assert [i.file_name for i in history.recent(2)] == ["c", "b"]
    assert history.recent(0) == []


def test_round_trip_fields(history):
    when = datetime(2024, 5, 1, 12, 30, tzinfo=timezone.utc)
    original = item(2048, 512, name="Résumé.pdf", preset=Preset.CUSTOM, processed_at=when)
    history.append(original)
    assert history.get(original.id) == original


def test_remove_and_clear(history):
    keep, drop = item(10, 5), item(10, 1)
    history.append(keep)
    history.append(drop)
    assert history.remove(drop.id) is True
    assert history.remove(drop.id) is False
    assert [i.id for i in history.all()] == [keep.id]
    assert history.best_savings_percent == 50
    assert history.clear() == 1
    assert history.all() == []


def test_remove_older_than(history):
    now = datetime.now(timezone.utc)
    history.append(item(10, 5, name="old", processed_at=now - timedelta(days=40)))
    history.append(item(10, 5, name="new", processed_at=now))
    assert history.remove_older_than(now - timedelta(days=30)) == 1
    assert [i.file_name for i in history.all()] == ["new"]
    assert history.remove_older_than(now - timedelta(days=30)) == 0


def test_migrations_run_once(tmp_path):
    url = f"sqlite:///{tmp_path / 'history.db'}"
    store = HistoryStore(create_history_engine(url))
    assert store.schema_version == len(MIGRATIONS)
    store.append(item(10, 5))

    reopened = HistoryStore(create_history_engine(url))
    assert reopened.schema_version == len(MIGRATIONS)
    assert len(reopened.all()) == 1


def test_import_legacy_json(history, tmp_path):
    history.append(item(1, 1, id="A1"))
    export = tmp_path / "history.json"
    export.write_text(json.dumps([
        {"id": "A1", "fileName": "dup.pdf", "originalSize": 10, "compressedSize": 5,
         "savingsPercent": 50, "processedAt": 0, "presetUsed": "mail"},
        {"id": "B2", "fileName": "deck.pptx", "originalSize": 1000, "compressedSize": 300,
         "savingsPercent": 70, "processedAt": 86400, "presetUsed": "whatsapp"},
        {"id": "C3", "fileName": "clip.mov", "originalSize": 500, "compressedSize": 400,
         "savingsPercent": 20, "processedAt": "2024-03-01T10:00:00Z", "presetUsed": "quality"},
        {"id": "D4", "fileName": "broken"},
    ]))

    assert history.import_legacy_json(export) == 2
    items = {i.id: i for i in history.all()}
    assert set(items) == {"A1", "B2", "C3"}
    assert items["A1"].file_name == "file.pdf"
    assert items["B2"].processed_at == datetime(2001, 1, 2, tzinfo=timezone.utc)
    assert items["B2"].preset_used is Preset.WHATSAPP
    assert items["C3"].processed_at == datetime(2024, 3, 1, 10, tzinfo=timezone.utc)
    assert history.import_legacy_json(export) == 0


def test_import_rejects_non_list(history, tmp_path):
    export = tmp_path / "history.json"
    export.write_text('{"items": []}')
    with pytest.raises(OptimizerError):
        history.import_legacy_json(export)


def test_keep_latest(history, monkeypatch):
    for name in ("a", "b", "c", "d"):
        history.append(item(10, 5, name=name))
    assert history.keep_latest(2) == 2
    assert [i.file_name for i in history.all()] == ["d", "c"]
    assert history.keep_latest(5) == 0

    monkeypatch.setattr(history_module.config, "HISTORY_MAX_ITEMS", 1)
    assert history.keep_latest() == 1
    assert [i.file_name for i in history.all()] == ["d"]
    assert history.keep_latest(0) == 1
    assert history.all() == []

import json

import pytest

import database_handler
import fetcher
from fetcher import PredictionService, extract_result_list
from prediction_engine import GameConstants, build_history


def feed_page(raw_factory, faces_factory, codes, start):
    """Raw feed records, newest-first, like the upstream result list."""
    totals = {'H': 13, 'L': 8}
    return [raw_factory(start - i, faces_factory(totals[c])) for i, c in enumerate(codes)]


@pytest.fixture
def page(raw_factory, faces_factory):
    return lambda codes, start=1010: feed_page(raw_factory, faces_factory, codes, start)


@pytest.mark.parametrize("payload", [
    {'data': {'resultList': [{'a': 1}]}},
    {'data': {'list': [{'a': 1}]}},
    {'list': [{'a': 1}]},
    {'data': [{'a': 1}]},
    [{'a': 1}],
])
def test_extract_result_list_shapes(payload):
    assert extract_result_list(payload) == [{'a': 1}]


def test_extract_result_list_unknown_shape():
    assert extract_result_list({'data': None}) is None
    assert extract_result_list("oops") is None


def test_refresh_detects_new_sessions(page):
    svc = PredictionService()
    assert svc.refresh(page("HLHHLHHHLLH")) is True
    assert svc.refresh(page("HLHHLHHHLLH")) is False
    assert svc.refresh([]) is False
    assert svc.refresh(page("L", start=1011)) is True
    assert svc.history_snapshot()[0]['session_id'] == 1011
    assert len(svc.history_snapshot()) == 12


def test_prediction_computed_once_per_session(page, monkeypatch):
    calls = []
    real_predict = fetcher.predict

    def counting_predict(*args, **kwargs):
        calls.append(args)
        return real_predict(*args, **kwargs)

    monkeypatch.setattr(fetcher, "predict", counting_predict)
    svc = PredictionService()
    assert svc.get_prediction() is None

    svc.refresh(page("HLHHLHHHLLH"))
    first = svc.get_prediction(timestamp=1.0)
    second = svc.get_prediction(timestamp=2.0)
    assert first == second
    assert first['session_id'] == 1011
    assert len(calls) == 1

    svc.refresh(page("H", start=1011))
    third = svc.get_prediction(timestamp=3.0)
    assert third['session_id'] == 1012
    assert len(calls) == 2


def test_realized_session_is_scored(page, raw_factory, faces_factory):
    svc = PredictionService()
    svc.refresh(page("HLHHLHHHLLH"))
    record = svc.get_prediction(timestamp=1.0)

    total = 13 if record['label'] == GameConstants.HIGH else 8
    svc.refresh([raw_factory(record['session_id'], faces_factory(total))])

    stats = svc.stats()
    assert stats['wins'] == 1
    assert stats['losses'] == 0
    assert stats['last_result'] == "WIN"
    assert stats['recent'][0]['session'] == record['session_id']
    assert svc.last_prediction['realized_label'] == record['label']


def test_report_outcome_validation():
    svc = PredictionService()
    with pytest.raises(ValueError):
        svc.report_outcome(1001, "MAYBE")
    with pytest.raises(ValueError):
        svc.report_outcome(None, GameConstants.HIGH)
    assert svc.report_outcome(1001, GameConstants.HIGH) is False


def test_service_persists_records_and_log(page, tmp_path):
    db_file = str(tmp_path / "predictions.db")
    log_file = str(tmp_path / "model_log.json")
    database_handler.ensure_setup(db_file)

    svc = PredictionService(model_log_file=log_file, db_file=db_file)
    svc.refresh(page("HLHHLHHHLLH"))
    record = svc.get_prediction(timestamp=5.0)

    stored = database_handler.fetch_predictions(db_file=db_file)
    assert [r['session_id'] for r in stored] == [record['session_id']]

    assert svc.report_outcome(record['session_id'], GameConstants.TRIPLE) is True
    assert database_handler.fetch_predictions(db_file=db_file)[0]['realized_label'] == GameConstants.TRIPLE

    restored = fetcher.load_model_log(log_file)
    assert restored == svc.model_log
    assert all(record['session_id'] in entries for entries in restored.values())


def test_model_log_missing_or_corrupt(tmp_path):
    assert fetcher.load_model_log(str(tmp_path / "absent.json")) == {}
    corrupt = tmp_path / "corrupt.json"
    corrupt.write_text("{not json")
    assert fetcher.load_model_log(str(corrupt)) == {}


def test_history_backup_restores_events(page, tmp_path):
    path = str(tmp_path / "history.json")
    history = build_history(page("HLHL"))
    fetcher.save_history_to_disk(history, path)
    assert json.loads((tmp_path / "history.json").read_text())[0]['session_id'] == 1010
    assert fetcher.load_history_from_disk(path) == history


def test_service_stamps_prediction_time(page):
    svc = PredictionService()
    svc.refresh(page("HLHHLHHHLLH"))
    assert svc.get_prediction(timestamp=12.5)['timestamp'] == 12.5

    svc.refresh(page("H", start=1011))
    assert isinstance(svc.get_prediction()['timestamp'], float)


def test_reported_session_is_still_scored(page, raw_factory, faces_factory):
    svc = PredictionService()
    svc.refresh(page("HLHHLHHHLLH"))
    record = svc.get_prediction(timestamp=1.0)

    svc.report_outcome(record['session_id'], record['label'])
    assert svc.last_prediction['realized_label'] == record['label']

    total = 13 if record['label'] == GameConstants.HIGH else 8
    svc.refresh([raw_factory(record['session_id'], faces_factory(total))])
    stats = svc.stats()
    assert stats['wins'] + stats['losses'] == 1
    assert stats['last_result'] == "WIN"
    assert stats['recent'][0]['session'] == record['session_id']

    # a later page without a new session does not score it twice
    svc.refresh(page("L", start=1011))
    assert svc.stats()['wins'] + svc.stats()['losses'] == 1


def test_current_prediction_pairs_latest_and_next(page):
    svc = PredictionService()
    assert svc.current_prediction() == (None, None)

    svc.refresh(page("HLHHLHHHLLH"))
    latest, record = svc.current_prediction(timestamp=1.0)
    assert latest['session_id'] == 1010
    assert record['session_id'] == 1011
    assert record == svc.get_prediction()

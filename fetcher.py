import aiohttp
import asyncio
import json
import sqlite3
import time
import sys
import os
import logging
import threading
from collections import deque
from typing import Any, Dict, List, Optional, Tuple

# --- LOGGING SETUP ---
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s [%(levelname)s] %(message)s',
    handlers=[logging.StreamHandler(sys.stdout)]
)
logger = logging.getLogger("TX_FETCHER")

import database_handler
from prediction_engine import (
    GameConstants, EngineConfig, build_history, merge_history, predict,
    next_session_id, normalize_session_id, dice_bias_test,
)

# --- CONFIGURATION ---
API_URL = os.environ.get("TX_API_URL", "https://api.wsktnus8.net/v2/history/getLastResult")
API_PARAMS = {'gameId': 'ktrng_3979', 'tableId': '39791215743193', 'curPage': 1}
HEADERS = {
    "Accept": "application/json",
    "Cache-Control": "no-cache"
}

BASE_DIR = database_handler.DB_PATH
MODEL_LOG_FILE = os.path.join(BASE_DIR, 'model_log.json')
LOCAL_DB_FILE = os.path.join(BASE_DIR, 'history_backup.json')

# --- SETTINGS ---
PAGE_SIZE = int(os.environ.get("TX_PAGE_SIZE", EngineConfig.HISTORY_LIMIT))
POLL_INTERVAL = float(os.environ.get("TX_POLL_INTERVAL", 2.0))
RECONNECT_DELAY = 5
REQUEST_TIMEOUT = 15
BIAS_ALERT_PVALUE = 0.01

# =============================================================================
# DISK HELPERS
# =============================================================================

def _atomic_write_json(path: str, data: Any):
    # Atomic write to prevent file corruption
    temp_file = path + ".tmp"
    with open(temp_file, "w") as f:
        json.dump(data, f)
    os.replace(temp_file, path)


def save_model_log(model_log: Dict, path: str = MODEL_LOG_FILE):
    try:
        _atomic_write_json(path, {name: {str(k): v for k, v in entries.items()}
                                  for name, entries in model_log.items()})
    except OSError as e:
        logger.error(f"Failed to save model log: {e}")


def load_model_log(path: str = MODEL_LOG_FILE) -> Dict:
    """Missing or unreadable log means starting from an empty one."""
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Model log restore failed: {e}")
        return {}
    if not isinstance(data, dict):
        return {}
    return {name: {normalize_session_id(k): v for k, v in entries.items()}
            for name, entries in data.items() if isinstance(entries, dict)}


def save_history_to_disk(history: List[Dict], path: str = LOCAL_DB_FILE):
    """Backup history to disk to prevent data loss on restarts."""
    try:
        _atomic_write_json(path, history)
    except OSError as e:
        logger.error(f"Failed to backup history: {e}")


def load_history_from_disk(path: str = LOCAL_DB_FILE) -> List[Dict]:
    if not os.path.exists(path):
        return []
    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.error(f"Disk restore failed: {e}")
        return []
    # backed-up events carry faces and session ids, so they reclassify cleanly
    history = build_history(data if isinstance(data, list) else [])
    logger.info(f"Restored {len(history)} records from disk.")
    return history

# =============================================================================
# PREDICTION SERVICE
# =============================================================================

class PredictionService:
    """
    Owns the mutable state around the engine: the history snapshot, the
    per-model prediction log and the last prediction. One lock covers
    read history -> compute -> write cache.
    """

    def __init__(self, model_log_file: Optional[str] = None, db_file: Optional[str] = None):
        self.lock = threading.Lock()
        self.model_log_file = model_log_file
        self.db_file = db_file
        self.history: List[Dict] = []
        self.model_log: Dict = {}
        self.last_prediction: Optional[Dict] = None
        self.scored_session = None
        self.last_win_status = "NONE"
        self.session_wins = 0
        self.session_losses = 0
        self.ui_history = deque(maxlen=50)

    def bootstrap(self, history: List[Dict], model_log: Dict):
        with self.lock:
            self.history = merge_history(self.history, history)
            self.model_log = model_log

    def history_snapshot(self) -> List[Dict]:
        with self.lock:
            return list(self.history)

    def refresh(self, raw_records: Optional[List[Dict]]) -> bool:
        """Merge a fresh feed page. True when a new latest session arrived."""
        fresh = build_history(raw_records)
        if not fresh:
            return False
        with self.lock:
            previous = self.history[0]['session_id'] if self.history else None
            self.history = merge_history(self.history, fresh)
            latest = self.history[0]['session_id']
            if latest == previous:
                return False
            self._verify_last_prediction()
            return True

    def _verify_last_prediction(self):
        if not self.last_prediction:
            return
        target = self.last_prediction['session_id']
        # A /report may set realized_label first; scoring still happens once
        if target == self.scored_session:
            return
        event = next((e for e in self.history if e['session_id'] == target), None)
        if event is None:
            return

        real_outcome = event['label']
        predicted = self.last_prediction['label']
        self.last_prediction['realized_label'] = real_outcome
        self.scored_session = target
        self._store_outcome(target, real_outcome)

        if predicted == real_outcome:
            self.session_wins += 1
            self.last_win_status = "WIN"
        else:
            self.session_losses += 1
            self.last_win_status = "LOSS"
        logger.info(f"RESULT: {self.last_win_status} | Session: {target} | {predicted} vs {real_outcome}")
        self.ui_history.appendleft({"session": target, "pred": predicted, "result": self.last_win_status})

    def get_prediction(self, timestamp: Optional[float] = None) -> Optional[Dict]:
        """Prediction for the session after the latest one, computed at most once per session."""
        with self.lock:
            return self._cached_prediction(timestamp)

    def current_prediction(self, timestamp: Optional[float] = None) -> Tuple[Optional[Dict], Optional[Dict]]:
        """Latest event and the prediction for the session after it, read under one lock."""
        with self.lock:
            if not self.history:
                return None, None
            return self.history[0], self._cached_prediction(timestamp)

    def _cached_prediction(self, timestamp: Optional[float]) -> Optional[Dict]:
        if not self.history:
            return None
        target = next_session_id(self.history[0]['session_id'])
        if self.last_prediction and self.last_prediction['session_id'] == target:
            return dict(self.last_prediction)

        record, self.model_log = predict(self.history, self.model_log)
        record['timestamp'] = time.time() if timestamp is None else timestamp
        self.last_prediction = record
        if self.model_log_file:
            save_model_log(self.model_log, self.model_log_file)
        if self.db_file:
            try:
                database_handler.insert_prediction(record, self.db_file)
            except sqlite3.Error as e:
                logger.error(f"Failed to store prediction {target}: {e}")
        return dict(record)

    def report_outcome(self, session_id: Any, label: str) -> bool:
        session_id = normalize_session_id(session_id)
        if session_id is None:
            raise ValueError("session_id is required")
        if label not in GameConstants.LABELS:
            raise ValueError(f"unknown label: {label!r}")
        with self.lock:
            updated = False
            if self.last_prediction and self.last_prediction['session_id'] == session_id:
                self.last_prediction['realized_label'] = label
                updated = True
            return self._store_outcome(session_id, label) or updated

    def _store_outcome(self, session_id: Any, label: str) -> bool:
        if not self.db_file:
            return False
        try:
            return database_handler.report_outcome(session_id, label, self.db_file)
        except sqlite3.Error as e:
            logger.error(f"Failed to store outcome for {session_id}: {e}")
            return False

    def stats(self) -> Dict:
        with self.lock:
            total = self.session_wins + self.session_losses
            return {
                "wins": self.session_wins,
                "losses": self.session_losses,
                "accuracy": f"{(self.session_wins / total) * 100:.1f}%" if total > 0 else "0.0%",
                "last_result": self.last_win_status,
                "data_size": len(self.history),
                "recent": list(self.ui_history),
                "dice_bias_pvalue": dice_bias_test(self.history),
            }


service = PredictionService(model_log_file=MODEL_LOG_FILE, db_file=database_handler.DB_FILE)

# =============================================================================
# DATA ACQUISITION
# =============================================================================

def extract_result_list(payload: Any) -> Optional[List]:
    """Handles the common result-list JSON shapes of the feed."""
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return None
    data = payload.get('data')
    if isinstance(data, list):
        return data
    for container in (data, payload):
        if isinstance(container, dict):
            for key in ('resultList', 'list'):
                if isinstance(container.get(key), list):
                    return container[key]
    return None


async def fetch_history(session: aiohttp.ClientSession, page_size: int = PAGE_SIZE) -> Optional[List]:
    params = dict(API_PARAMS, size=page_size)
    try:
        async with session.get(API_URL, params=params,
                               timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)) as response:
            if response.status == 200:
                # content_type=None: some mirrors answer with text/html
                d = await response.json(content_type=None)
                return extract_result_list(d)
            logger.warning(f"API returned status {response.status}")
    except asyncio.TimeoutError:
        logger.error("API Connection Timeout")
    except (aiohttp.ClientError, ValueError) as e:
        logger.error(f"Fetch Connection failed: {e}")
    return None

# =============================================================================
# CORE PROCESSING LOOP
# =============================================================================

def bootstrap(svc: PredictionService):
    svc.bootstrap(load_history_from_disk(), load_model_log(svc.model_log_file or MODEL_LOG_FILE))
    logger.info(f"History Sync Complete. Memory: {len(svc.history)} items.")


async def main_loop(svc: PredictionService = service):
    logger.info("TX FETCHER INITIALIZED.")

    async with aiohttp.ClientSession(headers=HEADERS) as session:
        while True:
            try:
                raw_list = await fetch_history(session, PAGE_SIZE)

                if raw_list:
                    if svc.refresh(raw_list):
                        latest, record = svc.current_prediction()
                        logger.info(f"New Session Detected: {latest['session_id']} "
                                    f"{latest['faces']} = {latest['total']} ({latest['label']})")
                        logger.info(f"NEXT: {record['session_id']} | PRED: {record['label']} "
                                    f"{record['numeric_totals']} | CONF: {record['confidence']:.1f}%")

                        history = svc.history_snapshot()
                        save_history_to_disk(history)
                        p_value = dice_bias_test(history)
                        if p_value is not None and p_value < BIAS_ALERT_PVALUE:
                            logger.warning(f"Dice bias suspected (p={p_value:.4f})")
                else:
                    logger.warning("No data received from API. Retrying...")
                    await asyncio.sleep(RECONNECT_DELAY)

                await asyncio.sleep(POLL_INTERVAL)

            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Global Loop Error: {e}")
                await asyncio.sleep(RECONNECT_DELAY)


if __name__ == '__main__':
    if sys.platform == 'win32':
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    database_handler.ensure_setup()
    bootstrap(service)
    try:
        asyncio.run(main_loop(service))
    except KeyboardInterrupt:
        logger.info("System shutting down gracefully.")

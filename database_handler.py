import os
import json
import sqlite3
import logging
from typing import Any, Dict, List, Optional

from prediction_engine import normalize_session_id

logger = logging.getLogger("TX_DB")

# --- PERSISTENCE PATHS ---
# Same lookup order as the hosting disk: explicit env, Render disks, then local dir
if os.environ.get('TX_DATA_DIR'):
    DB_PATH = os.environ['TX_DATA_DIR']
elif os.path.exists('/var/lib/data'):
    DB_PATH = '/var/lib/data'
elif os.path.exists('/data'):
    DB_PATH = '/data'
else:
    DB_PATH = os.path.abspath(os.path.dirname(__file__))

DB_FILE = os.environ.get('TX_DB_PATH') or os.path.join(DB_PATH, 'predictions.db')


def create_connection(db_file: Optional[str] = None) -> sqlite3.Connection:
    conn = sqlite3.connect(db_file or DB_FILE)
    conn.row_factory = sqlite3.Row
    return conn


def ensure_setup(db_file: Optional[str] = None):
    conn = create_connection(db_file)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS predictions (
                session_id TEXT PRIMARY KEY,
                label TEXT NOT NULL,
                numeric_totals TEXT NOT NULL,
                confidence REAL NOT NULL,
                rationale TEXT,
                realized_label TEXT,
                timestamp REAL NOT NULL
            )
        """)
        conn.commit()
        logger.info(f"Prediction store ready: {db_file or DB_FILE}")
    finally:
        conn.close()


def insert_prediction(record: Dict, db_file: Optional[str] = None) -> bool:
    """Append a prediction record. Returns False if the session is already stored."""
    conn = create_connection(db_file)
    try:
        cur = conn.execute(
            "INSERT OR IGNORE INTO predictions "
            "(session_id, label, numeric_totals, confidence, rationale, realized_label, timestamp) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (str(record['session_id']), record['label'], json.dumps(record['numeric_totals']),
             record['confidence'], record['rationale'], record.get('realized_label'), record['timestamp']))
        conn.commit()
        if cur.rowcount != 1:
            logger.warning(f"Prediction for session {record['session_id']} already stored, keeping the first")
            return False
        return True
    finally:
        conn.close()


def report_outcome(session_id: Any, label: str, db_file: Optional[str] = None) -> bool:
    conn = create_connection(db_file)
    try:
        cur = conn.execute("UPDATE predictions SET realized_label = ? WHERE session_id = ?",
                           (label, str(session_id)))
        conn.commit()
        return cur.rowcount > 0
    finally:
        conn.close()


def _row_to_record(row: sqlite3.Row) -> Dict:
    return {
        'session_id': normalize_session_id(row['session_id']),
        'label': row['label'],
        'numeric_totals': json.loads(row['numeric_totals']),
        'confidence': row['confidence'],
        'rationale': row['rationale'],
        'realized_label': row['realized_label'],
        'timestamp': row['timestamp'],
    }


def fetch_predictions(limit: int = 50, db_file: Optional[str] = None) -> List[Dict]:
    conn = create_connection(db_file)
    try:
        rows = conn.execute("SELECT * FROM predictions ORDER BY timestamp DESC LIMIT ?", (limit,)).fetchall()
    finally:
        conn.close()
    return [_row_to_record(row) for row in rows]


def accuracy_stats(db_file: Optional[str] = None) -> Dict:
    conn = create_connection(db_file)
    try:
        total, correct = conn.execute(
            "SELECT COUNT(*), COALESCE(SUM(CASE WHEN label = realized_label THEN 1 ELSE 0 END), 0) "
            "FROM predictions WHERE realized_label IS NOT NULL").fetchone()
    finally:
        conn.close()
    acc = f"{(correct / total) * 100:.1f}%" if total > 0 else "0.0%"
    return {'resolved': total, 'correct': correct, 'accuracy': acc}

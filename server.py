from flask import Flask, jsonify, request
import os
import sqlite3
import asyncio
import logging
import threading
from typing import Optional

import database_handler
import fetcher
from fetcher import PredictionService
from prediction_engine import GameConstants

logger = logging.getLogger("TX_SERVER")

MAX_HISTORY_PAGE = 100


def create_app(service: Optional[PredictionService] = None) -> Flask:
    app = Flask(__name__)
    svc = service or fetcher.service

    @app.route('/predict')
    def predict_next():
        latest, record = svc.current_prediction()
        if record is None or latest is None:
            return jsonify({"error": "No data yet"}), 503
        return jsonify({
            "session": latest['session_id'],
            "dice": latest['faces'],
            "total": latest['total'],
            "result": latest['label'],
            "next_session": record['session_id'],
            "prediction": record['label'],
            "numeric_totals": record['numeric_totals'],
            "confidence": record['confidence'],
            "note": record['rationale'],
        })

    @app.route('/history')
    def history():
        try:
            limit = int(request.args.get('limit', 20))
        except ValueError:
            return jsonify({"error": "limit must be an integer"}), 400
        limit = max(1, min(limit, MAX_HISTORY_PAGE))
        return jsonify(svc.history_snapshot()[:limit])

    @app.route('/report', methods=['POST'])
    def report():
        body = request.get_json(silent=True) or {}
        label = str(body.get('label', '')).strip().upper()
        try:
            updated = svc.report_outcome(body.get('session_id'), label)
        except ValueError as e:
            return jsonify({"error": str(e)}), 400
        return jsonify({"updated": updated})

    @app.route('/stats')
    def stats():
        data = svc.stats()
        if svc.db_file:
            try:
                data["stored"] = database_handler.accuracy_stats(svc.db_file)
            except sqlite3.Error as e:
                logger.error(f"Stored accuracy unavailable: {e}")
        return jsonify(data)

    @app.route('/heartbeat', methods=['POST'])
    def heartbeat():
        return jsonify({"status": "alive", "labels": list(GameConstants.LABELS)})

    return app


# --- BACKGROUND WORKER ---
def start_fetcher_loop(svc: PredictionService):
    """Runs the fetch loop on its own event loop in a background thread."""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    logger.info("Auto-Starting TX Fetcher...")
    try:
        loop.run_until_complete(fetcher.main_loop(svc))
    except Exception as e:
        logger.critical(f"Fetcher crashed: {e}")
    finally:
        loop.close()


if __name__ == '__main__':
    database_handler.ensure_setup()
    fetcher.bootstrap(fetcher.service)
    t = threading.Thread(target=start_fetcher_loop, args=(fetcher.service,), daemon=True)
    t.start()
    create_app(fetcher.service).run(host='0.0.0.0', port=int(os.environ.get('PORT', 5000)))

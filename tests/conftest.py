"""Shared pytest fixtures for building dice histories."""

import sys
from pathlib import Path

import pytest

# Ensure the project root (which holds the flat modules) is importable
PROJECT_ROOT = Path(__file__).resolve().parents[1]
PROJECT_ROOT_STR = str(PROJECT_ROOT)
if PROJECT_ROOT_STR not in sys.path:
    sys.path.insert(0, PROJECT_ROOT_STR)

from prediction_engine import GameConstants

CODES = {'H': GameConstants.HIGH, 'L': GameConstants.LOW, 'T': GameConstants.TRIPLE}
DEFAULT_CODE_TOTALS = {'H': 13, 'L': 8, 'T': 9}


def faces_for(total, triple=False):
    """Three dice summing to ``total``; not all equal unless ``triple``."""
    if triple:
        return [total // 3] * 3
    first = min(6, total - 2)
    second = min(6, total - first - 1)
    return [first, second, total - first - second]


def make_event(session_id, code, total=None):
    total = DEFAULT_CODE_TOTALS[code] if total is None else total
    return {
        'session_id': session_id,
        'label': CODES[code],
        'total': total,
        'faces': faces_for(total, code == 'T'),
    }


def make_history(codes, start=1000, totals=None):
    """``codes`` is newest-first, e.g. 'HHHLL'; session ids count down from ``start``."""
    return [make_event(start - i, code, totals[i] if totals else None) for i, code in enumerate(codes)]


def make_raw(session_id, faces):
    return {'gameNum': f'#{session_id}', 'facesList': list(faces), 'score': sum(faces)}


@pytest.fixture
def history_factory():
    return make_history


@pytest.fixture
def raw_factory():
    return make_raw


@pytest.fixture
def faces_factory():
    return faces_for

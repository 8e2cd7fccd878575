import math
import logging
import numpy as np
from scipy import stats
from collections import Counter
from typing import Dict, List, Optional, Any, Tuple

TITLE = "TX ORACLE - ADAPTIVE ENSEMBLE"

logger = logging.getLogger("TX_ENGINE")


class GameConstants:
    HIGH = "HIGH"
    LOW = "LOW"
    TRIPLE = "TRIPLE"
    BINARY = (HIGH, LOW)
    LABELS = (HIGH, LOW, TRIPLE)


class EngineConfig:
    HIGH_THRESHOLD = 11
    MIN_TOTAL = 3
    MAX_TOTAL = 18
    HISTORY_LIMIT = 100
    MIN_HISTORY = 10
    WARMUP_CONFIDENCE = 50.0
    STREAK_WINDOW = 15
    MODEL_LOG_RETENTION = 50
    PERFORMANCE_LOOKBACK = 10
    MAX_MULTIPLIER = 2.0
    TOTALS_MIN_EVENTS = 5
    TOTALS_DECAY = 0.2
    BIAS_MIN_EVENTS = 30


class EnsembleConfig:
    BASE_WEIGHTS = {
        'trend': 1.0,
        'short_pattern': 0.8,
        'mean_deviation': 0.7,
        'recent_switch': 0.6,
        'bridge_break': 1.0,
        'rule_based': 1.0,
        'markov': 0.7,
    }
    SHORT_PATTERN_STREAK_WEIGHT = 1.2
    BRIDGE_STREAK_WEIGHT = 1.5
    NOISY_SWITCHES = 6
    NOISY_STREAK = 7
    NOISE_DAMPING = 0.5
    BRIDGE_BOOST_STRONG = 0.4
    BRIDGE_BOOST = 0.3
    TIE_LABEL = GameConstants.HIGH


DEFAULT_TOTALS = {
    GameConstants.HIGH: [12, 13, 14],
    GameConstants.LOW: [7, 8, 9],
    GameConstants.TRIPLE: [9, 12, 6],
}

# Ordered fill values used when fewer than three distinct totals qualify
TOTALS_PADDING = {
    GameConstants.HIGH: [12, 13, 14, 11, 15, 16, 17],
    GameConstants.LOW: [7, 8, 9, 6, 10, 5, 4],
    GameConstants.TRIPLE: [9, 12, 6, 15, 3, 18],
}

FACE_KEYS = ('facesList', 'faces', 'dices', 'dice')
TOTAL_KEYS = ('score', 'total', 'point', 'sum')
SESSION_KEYS = ('gameNum', 'session_id', 'session', 'issueNumber', 'issue', 'id')


class MalformedEvent(ValueError):
    """Raised when a raw feed record cannot be turned into an event."""


# === UTILITY FUNCTIONS ===
def safe_int(value: Any) -> Optional[int]:
    try:
        if value is None or isinstance(value, bool):
            return None
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not number.is_integer():
        return None
    return int(number)


def normalize_session_id(value: Any) -> Any:
    """'#1234', '1234' and 1234 all become 1234; other ids stay opaque strings."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip().lstrip('#').strip()
    if not text:
        return None
    if text.isdigit():
        return int(text)
    return text


def next_session_id(session_id: Any) -> Any:
    if session_id is None:
        return None
    if isinstance(session_id, int):
        return session_id + 1
    return f"{session_id}+1"


def opposite_label(label: Optional[str]) -> str:
    return GameConstants.LOW if label == GameConstants.HIGH else GameConstants.HIGH


def labels_of(history: List[Dict]) -> List[str]:
    return [e['label'] for e in history]


def short_form(labels) -> str:
    return '-'.join(label[0] for label in labels)


def count_switches(labels: List[str]) -> int:
    return sum(1 for i in range(1, len(labels)) if labels[i] != labels[i - 1])


def most_common_gram(labels: List[str], size: int) -> Tuple[Optional[Tuple[str, ...]], int]:
    grams = Counter(tuple(labels[i:i + size]) for i in range(len(labels) - size + 1))
    if not grams:
        return None, 0
    return grams.most_common(1)[0]


def gram_breaker(gram: Tuple[str, ...]) -> str:
    # grams are newest-first, so a repeating gram continues with its last element
    return opposite_label(gram[-1])


def score_deviation(totals: List[int]) -> float:
    if not totals:
        return 0.0
    arr = np.asarray(totals, dtype=float)
    return float(np.mean(np.abs(arr - arr.mean())))


# === EVENT CLASSIFIER ===
def get_outcome_from_total(total: Any) -> Optional[str]:
    val = safe_int(total)
    if val is None or not EngineConfig.MIN_TOTAL <= val <= EngineConfig.MAX_TOTAL:
        return None
    return GameConstants.HIGH if val >= EngineConfig.HIGH_THRESHOLD else GameConstants.LOW


def get_label_from_faces(faces: Any, total: Any = None) -> Optional[str]:
    """TRIPLE when all three faces match, otherwise HIGH/LOW by total. None if unknown."""
    if not isinstance(faces, (list, tuple)) or len(faces) != 3:
        return None
    values = [safe_int(f) for f in faces]
    if any(v is None or not 1 <= v <= 6 for v in values):
        return None
    if total is not None and safe_int(total) != sum(values):
        return None
    if values[0] == values[1] == values[2]:
        return GameConstants.TRIPLE
    return get_outcome_from_total(sum(values))


def _first_present(record: Dict, keys: Tuple[str, ...]) -> Any:
    for key in keys:
        if record.get(key) is not None:
            return record[key]
    return None


def classify_event(raw: Dict) -> Dict:
    if not isinstance(raw, dict):
        raise MalformedEvent(f"record is not a mapping: {raw!r}")

    session_id = normalize_session_id(_first_present(raw, SESSION_KEYS))
    if session_id is None:
        raise MalformedEvent(f"record has no session id: {raw!r}")

    faces = _first_present(raw, FACE_KEYS)
    total = _first_present(raw, TOTAL_KEYS)
    label = get_label_from_faces(faces, total)
    if label is None:
        raise MalformedEvent(f"session {session_id}: no label for faces={faces!r} total={total!r}")

    values = [safe_int(f) for f in faces]
    return {'session_id': session_id, 'label': label, 'total': sum(values), 'faces': values}


def _order_events(events: List[Dict], limit: int) -> List[Dict]:
    seen = set()
    unique = []
    for event in events:
        if event['session_id'] in seen:
            continue
        seen.add(event['session_id'])
        unique.append(event)
    if unique and all(isinstance(e['session_id'], int) for e in unique):
        unique.sort(key=lambda e: e['session_id'], reverse=True)
    return unique[:limit]


def build_history(raw_records: Optional[List[Dict]], limit: int = EngineConfig.HISTORY_LIMIT) -> List[Dict]:
    """Classify a feed page into a newest-first history, dropping malformed records."""
    events = []
    for raw in raw_records or []:
        try:
            events.append(classify_event(raw))
        except MalformedEvent as e:
            logger.warning(f"Skipping malformed record: {e}")
    return _order_events(events, limit)


def merge_history(current: List[Dict], fresh: List[Dict], limit: int = EngineConfig.HISTORY_LIMIT) -> List[Dict]:
    return _order_events(list(fresh) + list(current), limit)


# === STREAK / BREAK DETECTOR ===
def detect_streak(labels: List[str]) -> Dict:
    if not labels:
        return {'streak': 0, 'current_label': None, 'break_probability': 0.0, 'switches': 0, 'imbalance': 0.0}

    current = labels[0]
    streak = 0
    for label in labels:
        if label != current:
            break
        streak += 1

    window = labels[:EngineConfig.STREAK_WINDOW]
    switches = count_switches(window)
    imbalance = abs(window.count(GameConstants.HIGH) - window.count(GameConstants.LOW)) / EngineConfig.STREAK_WINDOW

    if streak >= 6:
        probability = min(0.95, 0.8 + switches / 15 + imbalance * 0.3)
    elif streak >= 4:
        probability = min(0.90, 0.5 + switches / 12 + imbalance * 0.25)
    elif streak >= 2 and switches >= 5:
        probability = 0.45
    elif streak == 1 and switches >= 6:
        probability = 0.30
    else:
        probability = 0.0

    return {
        'streak': streak,
        'current_label': current,
        'break_probability': max(0.0, min(0.95, probability)),
        'switches': switches,
        'imbalance': imbalance,
    }


# === MODEL BANK ===
def _vote(prediction: str, source: str, reason: str) -> Dict:
    return {'prediction': prediction, 'source': source, 'reason': reason}


def _streak_override(streak_info: Dict, threshold: int, source: str) -> Optional[Dict]:
    streak = streak_info['streak']
    if streak < threshold:
        return None
    current = streak_info['current_label']
    chance = streak_info['break_probability']
    if chance > 0.6:
        return _vote(opposite_label(current), source, f"Streak {streak} {current}, break chance {chance:.0%}")
    return _vote(current, source, f"Streak {streak} {current}, following")


def model_trend(history: List[Dict], streak_info: Dict) -> Optional[Dict]:
    labels = labels_of(history)
    if not labels:
        return None
    override = _streak_override(streak_info, 3, 'trend')
    if override:
        return override

    window = labels[:15]
    weights = [1.3 ** (len(window) - i) for i in range(len(window))]
    high_w = sum(w for w, label in zip(weights, window) if label == GameConstants.HIGH)
    low_w = sum(w for w, label in zip(weights, window) if label == GameConstants.LOW)
    total_w = sum(weights)

    gram, count = most_common_gram(labels[:10], 4)
    if gram and count >= 3:
        return _vote(gram_breaker(gram), 'trend', f"Pattern {short_form(gram)} seen {count}x, breaking")

    if abs(high_w - low_w) >= 0.25 * total_w:
        leader = GameConstants.HIGH if high_w > low_w else GameConstants.LOW
        return _vote(leader, 'trend', f"Weighted trend favours {leader}")

    return _vote(opposite_label(labels[0]), 'trend', "No clear trend, inverting last")


def model_short_pattern(history: List[Dict], streak_info: Dict) -> Optional[Dict]:
    labels = labels_of(history)
    if not labels:
        return None
    override = _streak_override(streak_info, 2, 'short_pattern')
    if override:
        return override

    gram, count = most_common_gram(labels[:8], 2)
    if gram and count >= 2:
        return _vote(gram_breaker(gram), 'short_pattern', f"Pair {short_form(gram)} seen {count}x, breaking")
    return _vote(opposite_label(labels[0]), 'short_pattern', "No repeating pair, inverting last")


def model_mean_deviation(history: List[Dict], streak_info: Dict) -> Optional[Dict]:
    labels = labels_of(history)
    if not labels:
        return None
    override = _streak_override(streak_info, 2, 'mean_deviation')
    if override:
        return override

    window = labels[:12]
    high = window.count(GameConstants.HIGH)
    low = window.count(GameConstants.LOW)
    deviation = abs(high - low) / len(window)
    if deviation < 0.2:
        return _vote(opposite_label(labels[0]), 'mean_deviation', f"Balanced ({high}/{low}), inverting last")
    minority = GameConstants.LOW if high > low else GameConstants.HIGH
    return _vote(minority, 'mean_deviation', f"Deviation {deviation:.2f}, reverting to {minority}")


def model_recent_switch(history: List[Dict], streak_info: Dict) -> Optional[Dict]:
    labels = labels_of(history)
    if not labels:
        return None
    override = _streak_override(streak_info, 2, 'recent_switch')
    if override:
        return override

    switches = count_switches(labels[:10])
    # Both branches invert; the switch count only changes the reason.
    if switches >= 5:
        return _vote(opposite_label(labels[0]), 'recent_switch', f"Choppy ({switches} switches), inverting last")
    return _vote(opposite_label(labels[0]), 'recent_switch', f"Calm ({switches} switches), inverting last")


def model_bridge_break(history: List[Dict], streak_info: Dict) -> Optional[Dict]:
    """
    Decide whether the current bridge (run) keeps going.

    Starts from the detector's break probability and nudges it by a fixed
    delta. The first matching condition wins:
      1. stable streak (>=3, repeating pair, calm totals)  -0.25
      2. long streak (>=5)                                   +0.30
      3. totals swinging (mean abs deviation > 3.0)          +0.20
      4. stable repeating pair                               +0.25
      5. nothing notable                                     -0.20
    Breaks when the adjusted probability exceeds 0.5.
    """
    labels = labels_of(history)
    if not labels:
        return None

    streak = streak_info['streak']
    current = streak_info['current_label']
    chance = streak_info['break_probability']

    deviation = score_deviation([e['total'] for e in history[:20]])
    gram, count = most_common_gram(labels[:20], 2)
    stable = gram is not None and count >= 3

    if streak >= 3 and stable and deviation < 2.0:
        adjusted = chance - 0.25
        reason = f"Stable bridge {streak}x {current} (deviation {deviation:.2f}), following"
    elif streak >= 5:
        adjusted = chance + 0.3
        reason = f"Long bridge {streak}x {current}, expecting a break"
    elif deviation > 3.0:
        adjusted = chance + 0.2
        reason = f"Totals swinging (deviation {deviation:.2f}), bridge may break"
    elif stable:
        adjusted = chance + 0.25
        reason = f"Repeating {short_form(gram)} ({count}x), pattern may break"
    else:
        adjusted = chance - 0.2
        reason = "No break signal, following the bridge"

    adjusted = max(0.0, min(1.0, adjusted))
    prediction = opposite_label(current) if adjusted > 0.5 else current
    return _vote(prediction, 'bridge_break', f"{reason} ({adjusted:.0%})")


def model_rule_based(history: List[Dict], streak_info: Dict) -> Optional[Dict]:
    labels = labels_of(history)
    if not labels:
        return None
    H, L = GameConstants.HIGH, GameConstants.LOW
    streak = streak_info['streak']
    current = streak_info['current_label']

    if 2 <= streak <= 4:
        return _vote(current, 'rule_based', f"Short bridge {streak}x {current}, following")

    chrono = labels[:4][::-1]
    if chrono[-3:] == [H, L, H]:
        return _vote(L, 'rule_based', "Zigzag H-L-H, expecting LOW")
    if chrono[-3:] == [L, H, L]:
        return _vote(H, 'rule_based', "Zigzag L-H-L, expecting HIGH")
    # Shadowed by the short-bridge rule for pure HIGH/LOW runs; kept for order.
    if chrono == [H, H, L, L]:
        return _vote(H, 'rule_based', "Double block H-H-L-L, expecting HIGH")
    if chrono == [L, L, H, H]:
        return _vote(L, 'rule_based', "Double block L-L-H-H, expecting LOW")

    if streak >= 7:
        return _vote(opposite_label(current), 'rule_based', f"{streak} in a row, run exhausted")

    recent = history[:5]
    if len(recent) == 5:
        average = sum(e['total'] for e in recent) / 5
        if average > 11:
            return _vote(H, 'rule_based', f"Recent average total {average:.1f}, HIGH side")
        if average < 7:
            return _vote(L, 'rule_based', f"Recent average total {average:.1f}, LOW side")

        window = labels[:5]
        high, low = window.count(H), window.count(L)
        if abs(high - low) > 1:
            leader = H if high > low else L
            return _vote(leader, 'rule_based', f"{leader} dominates last 5 ({high}/{low})")

    high, low = labels.count(H), labels.count(L)
    majority = H if high >= low else L
    return _vote(opposite_label(majority), 'rule_based', f"Overall {majority} leads ({high}/{low}), expecting reversal")


def model_markov(history: List[Dict], streak_info: Dict) -> Optional[Dict]:
    # chronological 0/1 sequence, TRIPLE dropped
    binary = [1 if label == GameConstants.HIGH else 0
              for label in reversed(labels_of(history)) if label in GameConstants.BINARY]
    if len(binary) < 4:
        return None

    counts = np.zeros((2, 2))
    for prev, nxt in zip(binary[:-1], binary[1:]):
        counts[prev, nxt] += 1
    transition = (counts + 1) / (counts.sum(axis=1, keepdims=True) + 2)
    p_high = float(transition[binary[-1], 1])

    state = tuple(binary[-3:])
    followers = [binary[i + 3] for i in range(len(binary) - 3) if tuple(binary[i:i + 3]) == state]
    if followers:
        p_high = (p_high + sum(followers) / len(followers) * 0.7) / 1.7

    if math.isclose(p_high, 0.5):
        last3 = binary[-3:]
        if all(b == 1 for b in last3):
            return _vote(GameConstants.LOW, 'markov', "Even odds after H-H-H, breaking")
        if all(b == 0 for b in last3):
            return _vote(GameConstants.HIGH, 'markov', "Even odds after L-L-L, breaking")
        last = GameConstants.HIGH if binary[-1] else GameConstants.LOW
        return _vote(last, 'markov', "Even odds, following last")

    prediction = GameConstants.HIGH if p_high > 0.5 else GameConstants.LOW
    return _vote(prediction, 'markov', f"P(HIGH next)={p_high:.2f}")


MODEL_BANK = {
    'trend': model_trend,
    'short_pattern': model_short_pattern,
    'mean_deviation': model_mean_deviation,
    'recent_switch': model_recent_switch,
    'bridge_break': model_bridge_break,
    'rule_based': model_rule_based,
    'markov': model_markov,
}


def run_model_bank(history: List[Dict], streak_info: Dict) -> Dict[str, Dict]:
    votes = {}
    for name, model in MODEL_BANK.items():
        try:
            vote = model(history, streak_info)
        except Exception as e:
            logger.warning(f"Model {name} failed, abstaining: {e}")
            continue
        if vote:
            votes[name] = vote
    return votes


# === PERFORMANCE TRACKER ===
def model_multiplier(model_name: str, history: List[Dict], model_log: Optional[Dict]) -> float:
    logged = (model_log or {}).get(model_name) or {}
    if not logged:
        return 1.0

    correct = evaluated = 0
    for event in history:
        predicted = logged.get(event['session_id'])
        if predicted is None:
            continue
        evaluated += 1
        if predicted == event['label']:
            correct += 1
        if evaluated >= EngineConfig.PERFORMANCE_LOOKBACK:
            break

    if evaluated == 0:
        return 1.0
    half = evaluated / 2
    return max(0.0, min(EngineConfig.MAX_MULTIPLIER, 1.0 + (correct - half) / half))


def performance_multipliers(history: List[Dict], model_log: Optional[Dict]) -> Dict[str, float]:
    return {name: model_multiplier(name, history, model_log) for name in MODEL_BANK}


def update_model_log(model_log: Optional[Dict], session_id: Any, votes: Dict[str, Dict]) -> Dict:
    """Copy of the log with this session's votes recorded, oldest entries pruned."""
    updated = {name: dict(entries) for name, entries in (model_log or {}).items()}
    if session_id is None:
        return updated
    for name, vote in votes.items():
        entries = updated.setdefault(name, {})
        entries[session_id] = vote['prediction']
        while len(entries) > EngineConfig.MODEL_LOG_RETENTION:
            entries.pop(next(iter(entries)))
    return updated


# === ENSEMBLE COMBINER ===
def model_base_weights(streak: int) -> Dict[str, float]:
    weights = dict(EnsembleConfig.BASE_WEIGHTS)
    if streak >= 2:
        weights['short_pattern'] = EnsembleConfig.SHORT_PATTERN_STREAK_WEIGHT
    if streak >= 3:
        weights['bridge_break'] = EnsembleConfig.BRIDGE_STREAK_WEIGHT
    return weights


def combine_predictions(votes: Dict[str, Dict], multipliers: Dict[str, float], streak_info: Dict) -> Dict:
    streak = streak_info['streak']
    chance = streak_info['break_probability']
    weights = model_base_weights(streak)

    high_score = low_score = 0.0
    for name, vote in votes.items():
        weight = weights.get(name, 1.0) * multipliers.get(name, 1.0)
        if vote['prediction'] == GameConstants.HIGH:
            high_score += weight
        elif vote['prediction'] == GameConstants.LOW:
            low_score += weight

    noisy = streak_info.get('switches', 0) >= EnsembleConfig.NOISY_SWITCHES or streak >= EnsembleConfig.NOISY_STREAK
    if noisy:
        high_score *= EnsembleConfig.NOISE_DAMPING
        low_score *= EnsembleConfig.NOISE_DAMPING

    boost = 0.0
    if chance > 0.5:
        boost = EnsembleConfig.BRIDGE_BOOST_STRONG
    elif streak >= 3:
        boost = EnsembleConfig.BRIDGE_BOOST
    bridge = votes.get('bridge_break')
    if bridge and boost:
        if bridge['prediction'] == GameConstants.HIGH:
            high_score += boost
        elif bridge['prediction'] == GameConstants.LOW:
            low_score += boost

    if high_score > low_score:
        label = GameConstants.HIGH
    elif low_score > high_score:
        label = GameConstants.LOW
    else:
        label = EnsembleConfig.TIE_LABEL

    total = high_score + low_score
    winning = max(high_score, low_score)
    confidence = round(winning / total * 100, 2) if total > 0 else 0.0

    ai_reason = votes['rule_based']['reason'] if 'rule_based' in votes else "No rule matched"
    bridge_reason = bridge['reason'] if bridge else "No bridge signal"

    return {
        'label': label,
        'confidence': confidence,
        'high_score': high_score,
        'low_score': low_score,
        'noisy': noisy,
        'rationale': f"[AI] {ai_reason} | [Bridge] {bridge_reason}",
    }


# === NUMERIC-TOTAL ESTIMATOR ===
def estimate_totals(history: List[Dict], label: str) -> List[int]:
    matching = [e['total'] for e in history if e.get('label') == label]
    if len(matching) < EngineConfig.TOTALS_MIN_EVENTS:
        return list(DEFAULT_TOTALS.get(label, DEFAULT_TOTALS[GameConstants.HIGH]))

    decay = np.exp(-EngineConfig.TOTALS_DECAY * np.arange(len(matching)))
    scores: Dict[int, float] = {}
    for total, weight in zip(matching, decay):
        scores[total] = scores.get(total, 0.0) + float(weight)

    top = sorted(scores, key=lambda t: (-scores[t], t))[:3]
    for candidate in TOTALS_PADDING.get(label, TOTALS_PADDING[GameConstants.HIGH]):
        if len(top) >= 3:
            break
        if candidate not in top:
            top.append(candidate)
    return top


# === DIAGNOSTICS ===
def dice_bias_test(history: List[Dict]) -> Optional[float]:
    """Chi-square p-value of observed faces against a fair die."""
    if len(history) < EngineConfig.BIAS_MIN_EVENTS:
        return None
    faces = [f for e in history for f in e.get('faces') or []]
    if not faces:
        return None
    observed = np.bincount(np.asarray(faces) - 1, minlength=6)
    return float(stats.chisquare(observed).pvalue)


# === HELPER: WARMUP FALLBACK ===
def calculate_warmup_prediction(history: List[Dict]) -> Tuple[str, str]:
    """
    Not enough sessions for the model bank.
    >= 60% HIGH -> LOW, <= 40% HIGH -> HIGH, else invert the last one.
    """
    recent = [label for label in labels_of(history)[:15] if label in GameConstants.BINARY]
    if len(recent) < 5:
        return GameConstants.HIGH, "Low Data"

    ratio = recent.count(GameConstants.HIGH) / len(recent)
    if ratio >= 0.60:
        return GameConstants.LOW, f"Anti-Bias ({ratio:.0%} High)"
    elif ratio <= 0.40:
        return GameConstants.HIGH, f"Anti-Bias ({1 - ratio:.0%} Low)"
    return opposite_label(recent[0]), "Balanced PingPong"


# === MAIN PREDICTOR ===
def predict(history: List[Dict], model_log: Optional[Dict] = None,
            timestamp: Optional[float] = None) -> Tuple[Dict, Dict]:
    """
    Predict the session after the newest event in ``history`` (newest-first).

    Returns the prediction record and a new model log holding every model's
    vote for that session. The given log is not modified. The record carries
    ``timestamp`` as given; stamping it with the wall clock is up to the host.
    """
    history = list(history or [])
    target = next_session_id(history[0]['session_id']) if history else None

    if len(history) < EngineConfig.MIN_HISTORY:
        label, reason = calculate_warmup_prediction(history)
        record = build_prediction_record(
            target, label, estimate_totals(history, label), EngineConfig.WARMUP_CONFIDENCE,
            f"[Warmup] {len(history)}/{EngineConfig.MIN_HISTORY} sessions - {reason}", timestamp)
        return record, update_model_log(model_log, None, {})

    streak_info = detect_streak(labels_of(history))
    votes = run_model_bank(history, streak_info)
    multipliers = performance_multipliers(history, model_log)
    combined = combine_predictions(votes, multipliers, streak_info)
    logger.debug(f"Session {target}: high={combined['high_score']:.2f} low={combined['low_score']:.2f} "
                 f"streak={streak_info['streak']} noisy={combined['noisy']}")

    record = build_prediction_record(
        target, combined['label'], estimate_totals(history, combined['label']),
        combined['confidence'], combined['rationale'], timestamp)
    return record, update_model_log(model_log, target, votes)


def build_prediction_record(session_id: Any, label: str, numeric_totals: List[int],
                            confidence: float, rationale: str, timestamp: Optional[float]) -> Dict:
    return {
        'session_id': session_id,
        'label': label,
        'numeric_totals': list(numeric_totals),
        'confidence': max(0.0, min(100.0, confidence)),
        'rationale': rationale,
        'realized_label': None,
        'timestamp': timestamp,
    }

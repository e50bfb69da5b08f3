"""
Project health score engine.

Combines four sub-scores, each on a 0-100 scale, into one weighted score:

    Client Satisfaction   30%   recent feedback ratings (1-5 stars)
    Employee Confidence   25%   recent check-in confidence (1-5)
    Timeline Performance  25%   self-reported vs. time-based progress
    Risk Factor           20%   open risks + client-flagged issues

"Recent" means created within the trailing RECENT_WINDOW_DAYS of `now`.
The engine never reads the wall clock; the caller supplies `now`.
"""
import logging
import math
from datetime import timedelta

import numpy as np

log = logging.getLogger(__name__)

RECENT_WINDOW_DAYS = 28

WEIGHTS = {
    "client_satisfaction":  0.30,
    "employee_confidence":  0.25,
    "timeline_performance": 0.25,
    "risk_factor":          0.20,
}

NEUTRAL_SATISFACTION = 75   # no recent feedback
NEUTRAL_CONFIDENCE   = 70   # no recent check-ins

BEHIND_PENALTY_RATE = 2.0   # pts lost per percentage point behind schedule
AHEAD_BONUS_RATE    = 0.5   # pts gained per percentage point ahead (capped at 100)

RISK_PENALTIES = {
    "High":   10,
    "Medium": 5,
    "Low":    2,
}
FLAGGED_ISSUE_PENALTY = 5
RISK_PENALTY_CAP      = 30

COMPLETED_PROGRESS = 95

STATUS_ON_TRACK  = "On Track"
STATUS_AT_RISK   = "At Risk"
STATUS_CRITICAL  = "Critical"
STATUS_COMPLETED = "Completed"

STATUS_COLORS = {
    STATUS_ON_TRACK:  "green",
    STATUS_AT_RISK:   "yellow",
    STATUS_CRITICAL:  "red",
    STATUS_COMPLETED: "gray",
}

FACTOR_LABELS = {
    "client_satisfaction":  "Client Satisfaction",
    "employee_confidence":  "Employee Confidence",
    "timeline_performance": "Timeline Performance",
    "risk_factor":          "Risk Factor",
}

SECONDS_PER_DAY = 24 * 60 * 60


def clamp(v, lo=0.0, hi=100.0):
    return max(lo, min(hi, v))


def round_half_up(v):
    # 92.5 -> 93; Python's round() would give 92
    return int(math.floor(v + 0.5))


def days_between(start, end):
    """Fractional days from `start` to `end` (negative if `end` is earlier)."""
    return (end - start).total_seconds() / SECONDS_PER_DAY


def recent(records, now, window_days=RECENT_WINDOW_DAYS):
    cutoff = now - timedelta(days=window_days)
    return [r for r in records if r["created_at"] >= cutoff]


def mean_of(records, key):
    if not records:
        return None
    return float(np.mean([r[key] for r in records]))


# ── SUB-SCORES ────────────────────────────────────────────────────────────

def satisfaction_score(avg_satisfaction):
    if avg_satisfaction is None:
        return float(NEUTRAL_SATISFACTION)
    return avg_satisfaction / 5 * 100


def confidence_score(avg_confidence):
    if avg_confidence is None:
        return float(NEUTRAL_CONFIDENCE)
    return avg_confidence / 5 * 100


def expected_progress(start_date, end_date, now):
    """
    Linear time-based projection of percent complete at `now`.

    A zero or negative duration is floored to one day, so a degenerate
    timeline reports 100% expected once `now` is a day past the start.
    A project that has not started yet expects 0%.
    """
    total_days   = max(1.0, days_between(start_date, end_date))
    elapsed_days = max(0.0, days_between(start_date, now))
    return min(100.0, elapsed_days / total_days * 100)


def timeline_score(actual, expected):
    """
    Asymmetric schedule score: being behind costs BEHIND_PENALTY_RATE pts
    per percentage point, being ahead earns only AHEAD_BONUS_RATE (capped).
    """
    diff = actual - expected
    if diff < 0:
        return max(0.0, 100 + diff * BEHIND_PENALTY_RATE)
    if diff > 0:
        return min(100.0, 100 + diff * AHEAD_BONUS_RATE)
    return 100.0


def count_open_risks(risks):
    counts = {"high": 0, "medium": 0, "low": 0}
    for r in risks:
        if r["status"] != "Open":
            continue
        key = str(r["severity"]).lower()
        if key in counts:
            counts[key] += 1
    return counts


def risk_penalty(open_risks, flagged_issues):
    penalty = (open_risks["high"]   * RISK_PENALTIES["High"] +
               open_risks["medium"] * RISK_PENALTIES["Medium"] +
               open_risks["low"]    * RISK_PENALTIES["Low"] +
               flagged_issues       * FLAGGED_ISSUE_PENALTY)
    return min(RISK_PENALTY_CAP, penalty)


# ── STATUS ────────────────────────────────────────────────────────────────

def status_from_score(score):
    if score >= 80:
        return STATUS_ON_TRACK
    if score >= 60:
        return STATUS_AT_RISK
    return STATUS_CRITICAL


def status_color(status):
    return STATUS_COLORS.get(status, "gray")


def health_score_color(score):
    return STATUS_COLORS[status_from_score(score)]


def derive_status(score, actual, end_date, now):
    # Completed wins over any score-based status
    if now >= end_date and actual >= COMPLETED_PROGRESS:
        return STATUS_COMPLETED
    return status_from_score(score)


# ── ENGINE ────────────────────────────────────────────────────────────────

def calculate_health_score(timeline, feedbacks, check_ins, risks, now,
                           window_days=RECENT_WINDOW_DAYS):
    """
    Compute the health score for one project.

    `timeline` holds `start_date`/`end_date`; the three record collections
    may be empty. Ratings and percentages are not range-checked here: the
    layer that accepts submissions owns validation.

    Returns a dict with `score`, `status`, `breakdown` (weighted
    contributions, each rounded on its own, so their sum can drift from
    `score` by a point or two) and `details`.
    """
    start_date = timeline["start_date"]
    end_date   = timeline["end_date"]

    recent_feedbacks = recent(feedbacks, now, window_days)
    recent_check_ins = recent(check_ins, now, window_days)

    avg_satisfaction = mean_of(recent_feedbacks, "satisfaction_rating")
    avg_confidence   = mean_of(recent_check_ins, "confidence_level")
    avg_completion   = mean_of(recent_check_ins, "completion_percentage")

    expected = expected_progress(start_date, end_date, now)
    # No recent check-ins: assume on pace rather than penalize silence
    actual   = avg_completion if avg_completion is not None else expected

    open_risks     = count_open_risks(risks)
    flagged_issues = sum(1 for f in recent_feedbacks if f["issue_flagged"])
    penalty        = risk_penalty(open_risks, flagged_issues)

    sub_scores = {
        "client_satisfaction":  satisfaction_score(avg_satisfaction),
        "employee_confidence":  confidence_score(avg_confidence),
        "timeline_performance": timeline_score(actual, expected),
        "risk_factor":          100.0 - penalty,
    }

    weighted = {k: sub_scores[k] * WEIGHTS[k] for k in WEIGHTS}
    score    = int(clamp(round_half_up(sum(weighted.values())), 0, 100))
    status   = derive_status(score, actual, end_date, now)

    log.debug("health score %s (%s): feedback=%d check_ins=%d risk_penalty=%d",
              score, status, len(recent_feedbacks), len(recent_check_ins), penalty)

    return {
        "score":     score,
        "status":    status,
        "breakdown": {k: round_half_up(v) for k, v in weighted.items()},
        "details": {
            "avg_satisfaction":      avg_satisfaction if avg_satisfaction is not None else 0,
            "avg_confidence":        avg_confidence if avg_confidence is not None else 0,
            "expected_progress":     round_half_up(expected),
            "actual_progress":       round_half_up(actual),
            "flagged_issues":        flagged_issues,
            "open_risks":            open_risks,
            "sub_scores":            sub_scores,
            "recent_feedback_count": len(recent_feedbacks),
            "recent_check_in_count": len(recent_check_ins),
            "window_days":           window_days,
        },
    }


def generate_narrative(name, result, trend_delta=0.0):
    """Plain-language health narrative for one computed result."""
    score   = result["score"]
    status  = result["status"]
    details = result["details"]

    if status == STATUS_COMPLETED:
        opener = f"**{name}** is complete ({score}/100)."
    elif status == STATUS_ON_TRACK:
        opener = f"**{name}** is in good health ({score}/100)."
    elif status == STATUS_AT_RISK:
        opener = f"**{name}** is at risk ({score}/100) and warrants attention."
    else:
        opener = f"**{name}** is in a critical state ({score}/100) and requires immediate intervention."

    trend_str = ""
    if abs(trend_delta) >= 1.0:
        direction = "improving" if trend_delta > 0 else "declining"
        trend_str = f" The score is **{direction}** ({trend_delta:+.0f} pts since last calculation)."

    sched_str = ""
    gap = details["expected_progress"] - details["actual_progress"]
    if gap > 5:
        sched_str = (f" Reported progress is **{details['actual_progress']}%** against "
                     f"**{details['expected_progress']}%** expected by now.")

    risk_str = ""
    high = details["open_risks"]["high"]
    if high >= 3:
        risk_str = f" There are **{high} high-severity risks** open; escalation may be warranted."
    elif high > 0:
        risk_str = f" {high} high-severity risk(s) are open and should be monitored."

    issue_str = ""
    if details["flagged_issues"] > 0:
        issue_str = f" The client flagged issues in {details['flagged_issues']} recent feedback submission(s)."

    # Top detractor = factor losing the most points against its weight
    gaps = {k: WEIGHTS[k] * 100 - result["breakdown"][k] for k in WEIGHTS}
    top_key, top_gap = max(gaps.items(), key=lambda x: x[1])
    driver_str = ""
    if top_gap >= 1:
        driver_str = (f" The biggest drag on health is **{FACTOR_LABELS[top_key]}** "
                      f"(costing ~{top_gap:.0f} pts vs its potential).")

    return opener + trend_str + sched_str + risk_str + issue_str + driver_str

import logging
import os
import threading
from datetime import datetime

import pandas as pd
from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from health_score import (
    AHEAD_BONUS_RATE, BEHIND_PENALTY_RATE, COMPLETED_PROGRESS, FLAGGED_ISSUE_PENALTY,
    NEUTRAL_CONFIDENCE, NEUTRAL_SATISFACTION, RECENT_WINDOW_DAYS, RISK_PENALTIES,
    RISK_PENALTY_CAP, WEIGHTS, calculate_health_score, generate_narrative, status_color,
)

log = logging.getLogger(__name__)

app = Flask(__name__)

TABLES = {
    "projects":  ("projects.csv",  ["project_id", "project_name", "start_date", "end_date",
                                    "health_score", "status"]),
    "feedback":  ("feedback.csv",  ["project_id", "satisfaction_rating", "issue_flagged",
                                    "created_at"]),
    "check_ins": ("check_ins.csv", ["project_id", "confidence_level", "completion_percentage",
                                    "created_at"]),
    "risks":     ("risks.csv",     ["project_id", "severity", "status"]),
}
DATE_COLUMNS    = ("start_date", "end_date", "created_at")
NUMERIC_COLUMNS = ("satisfaction_rating", "confidence_level", "completion_percentage")

# Record rows missing any of these are unusable and dropped on load
REQUIRED_COLUMNS = {
    "feedback":  ["project_id", "satisfaction_rating", "created_at"],
    "check_ins": ["project_id", "confidence_level", "completion_percentage", "created_at"],
    "risks":     ["project_id", "severity", "status"],
}

SEVERITIES    = ("Low", "Medium", "High")
RISK_STATUSES = ("Open", "Resolved")

# Load, recompute and save of projects.csv must not interleave
_table_lock = threading.Lock()


class PayloadError(ValueError):
    """Request body or query could not be turned into engine input."""


class ProjectNotFound(LookupError):
    pass


class UnusableTimeline(ValueError):
    """Stored project has a missing or unparsable start/end date."""


def data_dir():
    default = os.path.join(os.path.dirname(__file__), "data")
    return os.environ.get("HEALTH_DATA_DIR", default)


# ── DATA LOADING ──────────────────────────────────────────────────────────

def load_table(name):
    filename, columns = TABLES[name]
    csv_path = os.path.join(data_dir(), filename)
    if not os.path.exists(csv_path):
        log.warning("%s not found, treating %s as empty", csv_path, name)
        return pd.DataFrame(columns=columns)
    df = pd.read_csv(csv_path, dtype={"project_id": str})
    df = df.dropna(how="all")
    for col in DATE_COLUMNS:
        if col in df.columns:
            df[col] = pd.to_datetime(df[col], errors="coerce")
    for col in NUMERIC_COLUMNS:
        if col in df.columns:
            df[col] = pd.to_numeric(df[col], errors="coerce")
    if "issue_flagged" in df.columns:
        df["issue_flagged"] = df["issue_flagged"].fillna(False).astype(bool)

    required = [c for c in REQUIRED_COLUMNS.get(name, []) if c in df.columns]
    if required:
        usable = df[required].notna().all(axis=1)
        if not usable.all():
            log.warning("%s: skipping %d row(s) with missing or invalid %s",
                        filename, int((~usable).sum()), ", ".join(required))
            df = df[usable]
    return df


def load_data():
    return {name: load_table(name) for name in TABLES}


def save_projects(projects):
    filename, _ = TABLES["projects"]
    os.makedirs(data_dir(), exist_ok=True)
    projects.to_csv(os.path.join(data_dir(), filename), index=False)


# ── BATCH SCORING ─────────────────────────────────────────────────────────

def _records_by_project(df):
    return {pid: grp.to_dict("records") for pid, grp in df.groupby("project_id")}


def _stored_score(row):
    val = row.get("health_score")
    if val is None or pd.isna(val):
        return None
    return int(val)


def compute_scores(frames, now, window_days=RECENT_WINDOW_DAYS, project_ids=None):
    """
    Score every project in `frames["projects"]` (or only `project_ids`).

    Feedback, check-ins and risks are matched to projects on `project_id`;
    a project with no rows of a kind is scored with an empty collection.
    """
    feedback  = _records_by_project(frames["feedback"])
    check_ins = _records_by_project(frames["check_ins"])
    risks     = _records_by_project(frames["risks"])

    summaries = []
    for _, row in frames["projects"].iterrows():
        pid = row["project_id"]
        if project_ids is not None and pid not in project_ids:
            continue

        if pd.isna(row["start_date"]) or pd.isna(row["end_date"]):
            log.warning("project %s has no usable timeline, skipping", pid)
            continue

        timeline = {"start_date": row["start_date"], "end_date": row["end_date"]}
        result = calculate_health_score(
            timeline,
            feedback.get(pid, []),
            check_ins.get(pid, []),
            risks.get(pid, []),
            now,
            window_days=window_days,
        )

        previous    = _stored_score(row)
        trend_delta = result["score"] - previous if previous is not None else 0
        name        = row.get("project_name")
        if not isinstance(name, str) or not name:
            name = pid

        summaries.append({
            "project_id":     pid,
            "project_name":   name,
            "previous_score": previous,
            "health_score":   result["score"],
            "status":         result["status"],
            "color":          status_color(result["status"]),
            "trend_delta":    trend_delta,
            "breakdown":      result["breakdown"],
            "details":        result["details"],
            "narrative":      generate_narrative(name, result, trend_delta),
        })

    return summaries


def write_back(projects, summaries):
    for col in ("health_score", "status"):
        if col not in projects.columns:
            projects[col] = None
    projects["health_score"] = projects["health_score"].astype(object)
    projects["status"]       = projects["status"].astype(object)
    for summ in summaries:
        mask = projects["project_id"] == summ["project_id"]
        projects.loc[mask, "health_score"] = summ["health_score"]
        projects.loc[mask, "status"]       = summ["status"]
    save_projects(projects)


# ── REQUEST PARSING ───────────────────────────────────────────────────────

def to_datetime(value):
    try:
        ts = pd.Timestamp(value)
    except (TypeError, ValueError) as exc:
        raise PayloadError(f"invalid date: {value!r}") from exc
    if pd.isna(ts):
        raise PayloadError(f"invalid date: {value!r}")
    if ts.tzinfo is not None:
        ts = ts.tz_convert("UTC").tz_localize(None)
    return ts.to_pydatetime()


def _number_in_range(record, key, lo, hi):
    try:
        val = float(record[key])
    except KeyError as exc:
        raise PayloadError(f"missing field: {key}") from exc
    except (TypeError, ValueError) as exc:
        raise PayloadError(f"{key} must be a number") from exc
    if not lo <= val <= hi:
        raise PayloadError(f"{key} must be between {lo} and {hi}")
    return val


def _flag(record, key):
    val = record.get(key, False)
    if not isinstance(val, bool):
        raise PayloadError(f"{key} must be true or false")
    return val


def _created_at(record):
    if "created_at" not in record:
        raise PayloadError("missing field: created_at")
    return to_datetime(record["created_at"])


def parse_feedback(record):
    return {
        "satisfaction_rating": _number_in_range(record, "satisfaction_rating", 1, 5),
        "issue_flagged":       _flag(record, "issue_flagged"),
        "created_at":          _created_at(record),
    }


def parse_check_in(record):
    return {
        "confidence_level":      _number_in_range(record, "confidence_level", 1, 5),
        "completion_percentage": _number_in_range(record, "completion_percentage", 0, 100),
        "created_at":            _created_at(record),
    }


def parse_risk(record):
    severity = record.get("severity")
    status   = record.get("status", "Open")
    if severity not in SEVERITIES:
        raise PayloadError(f"severity must be one of {', '.join(SEVERITIES)}")
    if status not in RISK_STATUSES:
        raise PayloadError(f"status must be one of {', '.join(RISK_STATUSES)}")
    return {"severity": severity, "status": status}


def parse_payload(body):
    if not isinstance(body, dict):
        raise PayloadError("request body must be a JSON object")
    timeline = body.get("timeline")
    if not isinstance(timeline, dict):
        raise PayloadError("missing field: timeline")
    if "start_date" not in timeline or "end_date" not in timeline:
        raise PayloadError("timeline needs start_date and end_date")

    start_date = to_datetime(timeline["start_date"])
    end_date   = to_datetime(timeline["end_date"])
    if end_date <= start_date:
        raise PayloadError("end_date must be after start_date")

    def records(key, parse):
        items = body.get(key) or []
        if not isinstance(items, list):
            raise PayloadError(f"{key} must be a list")
        return [parse(item) for item in items]

    return {
        "timeline":  {"start_date": start_date, "end_date": end_date},
        "feedbacks": records("feedbacks", parse_feedback),
        "check_ins": records("check_ins", parse_check_in),
        "risks":     records("risks", parse_risk),
        "now":       to_datetime(body["now"]) if body.get("now") else datetime.now(),
    }


def request_overrides():
    """`now` and `window_days` from the query string; bad values are ignored."""
    now, window_days = datetime.now(), RECENT_WINDOW_DAYS

    val = request.args.get("now")
    if val is not None:
        try:
            now = to_datetime(val)
        except PayloadError:
            pass

    val = request.args.get("window_days")
    if val is not None:
        try:
            window_days = max(1, int(val))
        except ValueError:
            pass

    return now, window_days


# ── ROUTES ────────────────────────────────────────────────────────────────

@app.errorhandler(PayloadError)
def bad_request(exc):
    return jsonify({"error": str(exc)}), 400


@app.errorhandler(ProjectNotFound)
def not_found(exc):
    return jsonify({"error": "Project not found"}), 404


@app.errorhandler(UnusableTimeline)
def unusable_timeline(exc):
    return jsonify({"error": str(exc)}), 422


@app.errorhandler(Exception)
def internal_error(exc):
    if isinstance(exc, HTTPException):
        return exc
    log.exception("unhandled error on %s", request.path)
    return jsonify({"error": "Internal server error"}), 500


@app.route("/api/data")
def api_data():
    now, window_days = request_overrides()
    summaries = compute_scores(load_data(), now, window_days)
    return jsonify({
        "summaries":   summaries,
        "now":         now.isoformat(),
        "window_days": window_days,
    })


@app.route("/api/health/calculate", methods=["POST"])
def calculate():
    parsed = parse_payload(request.get_json(silent=True))
    result = calculate_health_score(
        parsed["timeline"], parsed["feedbacks"], parsed["check_ins"], parsed["risks"],
        parsed["now"],
    )
    return jsonify(result)


@app.route("/api/projects/<project_id>/calculate-health", methods=["POST"])
def calculate_project_health(project_id):
    now, window_days = request_overrides()
    with _table_lock:
        frames = load_data()
        if project_id not in set(frames["projects"]["project_id"]):
            raise ProjectNotFound(project_id)
        summs = compute_scores(frames, now, window_days, project_ids={project_id})
        if not summs:
            raise UnusableTimeline(f"project {project_id} has no usable start/end date")
        summ = summs[0]
        write_back(frames["projects"], [summ])

    log.info("recalculated %s: %s -> %s (%s)", project_id,
             summ["previous_score"], summ["health_score"], summ["status"])
    return jsonify({
        "success":      True,
        "health_score": summ["health_score"],
        "status":       summ["status"],
        "breakdown":    summ["breakdown"],
        "details":      summ["details"],
    })


@app.route("/api/projects/recalculate-all-health", methods=["POST"])
def recalculate_all():
    now, window_days = request_overrides()
    with _table_lock:
        frames = load_data()
        projects = frames["projects"]
        unique = dict(frames, projects=projects.drop_duplicates("project_id"))
        summaries = compute_scores(unique, now, window_days)
        write_back(projects, summaries)

    results = [{
        "project_id":   summ["project_id"],
        "project_name": summ["project_name"],
        "old_score":    summ["previous_score"],
        "new_score":    summ["health_score"],
        "status":       summ["status"],
    } for summ in summaries]

    log.info("recalculated health scores for %d projects", len(results))
    return jsonify({
        "success": True,
        "message": f"Recalculated health scores for {len(results)} projects",
        "results": results,
    })


@app.route("/api/parameters/defaults")
def default_parameters():
    return jsonify({
        "weights":               WEIGHTS,
        "neutral_satisfaction":  NEUTRAL_SATISFACTION,
        "neutral_confidence":    NEUTRAL_CONFIDENCE,
        "behind_penalty_rate":   BEHIND_PENALTY_RATE,
        "ahead_bonus_rate":      AHEAD_BONUS_RATE,
        "risk_penalties":        RISK_PENALTIES,
        "flagged_issue_penalty": FLAGGED_ISSUE_PENALTY,
        "risk_penalty_cap":      RISK_PENALTY_CAP,
        "completed_progress":    COMPLETED_PROGRESS,
        "window_days":           RECENT_WINDOW_DAYS,
    })


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    app.run(debug=True, port=5050)

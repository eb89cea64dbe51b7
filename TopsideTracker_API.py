# Import necessary modules
from flask import Flask, Blueprint, Response, current_app, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException
from typing import Callable, Dict, List, Optional
from datetime import datetime, timezone
from dotenv import load_dotenv
import json
import os
import traceback
from threading import Lock

from report_store import ReportStore, StoreError, history_cutoff
from reportguard import INVALID_EMBARK_ID_MESSAGE, REPORT_TYPES, ReportGuard, negative_total, utc_now

# Load environment variables from .env file
load_dotenv()

BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# --- Thread Safety ---
# Locks for concurrent access to JSON log files
general_log_lock = Lock()
rejection_log_lock = Lock()

# --- Application Configuration Constants ---
# Single DB file for all reports
DB_FILE = os.environ.get("DB_FILE", os.path.join(BASE_DIR, "topside.db"))
# Directory holding log.json and rejections.json
LOG_DIR = os.environ.get("LOG_DIR", BASE_DIR)
# Front-end pages served alongside the API
FRONTEND_DIR = os.environ.get("FRONTEND_DIR", os.path.join(BASE_DIR, "frontend"))
# Port for the development server
PORT = int(os.environ.get("PORT", 3000))
# Origins allowed to call the API from a browser
# 5500: Used for local development with Live Server
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "ALLOWED_ORIGINS",
        "http://localhost:3000,https://v1-deploy.github.io,http://127.0.0.1:5500"
    ).split(",")
    if origin.strip()
]
# Rate limiter storage backend
RATELIMIT_STORAGE_URI = os.environ.get("RATELIMIT_STORAGE_URI", "memory://")

# API rate limiting: every /api route, per IP
API_RATE_LIMIT = "100 per 15 minutes"
API_RATE_LIMIT_MESSAGE = "Too many requests from this IP, please try again later."
# Report submissions, per IP, on top of the API limit
REPORT_RATE_LIMIT = "50 per hour"
REPORT_RATE_LIMIT_MESSAGE = "Too many reports submitted. Please try again later."

# Trailing window for the history endpoint in days
HISTORY_WINDOW_DAYS = 30

# Front-end page routes and the file each one serves
FRONTEND_PAGES = {
    '/': 'index.html',
    '/report': 'report.html',
    '/mission': 'mission.html',
    '/contact': 'contact.html',
    '/support': 'support.html',
    '/privacy': 'privacy.html',
    '/terms': 'terms.html',
}

# --- Helper Functions for Logging ---

def _log_path(filename: str) -> str:
    return os.path.join(LOG_DIR, filename)

def _append_json_log(path: str, lock: Lock, event: Dict) -> None:
    with lock:
        # Load existing logs or start fresh
        logs = []
        if os.path.exists(path):
            with open(path, 'r') as f:
                logs = json.load(f)
        # Append new event
        logs.append(event)
        # Write back
        with open(path, 'w') as f:
            json.dump(logs, f, indent=2)

# Log to log.json for general server errors
def log_to_general_json(event: Dict) -> None:
    """
    Log a general server error to log.json with thread-safe file locking.

    Args:
        event: Dictionary containing error event data (error, traceback, etc.)
    """
    try:
        _append_json_log(_log_path("log.json"), general_log_lock, event)
    except Exception as e:
        print(f"GENERAL LOG ERROR: {e}")

# Log an error to log.json with context
def log_error(function_name: str, error: Exception, context: Optional[Dict] = None) -> None:
    """
    Log an error with full stack trace and context to log.json.

    Store errors keep their sqlite cause in the traceback; none of this is
    ever sent to the client.

    Args:
        function_name: Name of the function where error occurred
        error: The exception object
        context: Optional dictionary with contextual data (embark ID, report type, etc.)
    """
    try:
        error_event = {
            'ts': int(datetime.now(timezone.utc).timestamp()),
            'function': function_name,
            'error': str(error),
            'error_type': type(error).__name__,
            'traceback': ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        }
        if error.__cause__ is not None:
            error_event['cause'] = f"{type(error.__cause__).__name__}: {error.__cause__}"
        if context:
            error_event['context'] = context
        log_to_general_json(error_event)
    except Exception as e:
        print(f"LOG ERROR FAILED: {e}")

# Log rejection reason to rejections.json
def log_rejection(reason: str, metric: str, data: Optional[Dict]) -> None:
    # Reporter IDs are never written to the log
    try:
        event = {
            'ts': int(datetime.now(timezone.utc).timestamp()),
            'ip': request.remote_addr,
            'metric': metric,
            'reason': reason,
            'ua': request.headers.get('User-Agent'),
            'data_excerpt': {
                'embarkId': (data.get('embarkId') if isinstance(data, dict) else None),
                'reportType': (data.get('reportType') if isinstance(data, dict) else None)
            }
        }
        _append_json_log(_log_path("rejections.json"), rejection_log_lock, event)
    except Exception as e:
        print(f"REJECTION LOG ERROR: {e}")

# --- Helper Functions for API Responses ---

def error_response(message: str, status: int):
    return jsonify({"success": False, "error": message}), status

def _store() -> ReportStore:
    return current_app.extensions['report_store']

def _guard() -> ReportGuard:
    return current_app.extensions['report_guard']

def build_summary_response(embark_id: str, rows: Optional[List[Dict]]) -> Dict:
    """
    Shape the store's aggregation rows into the summary payload.

    Args:
        embark_id: The requested Embark ID (used when there are no reports)
        rows: Result of ReportStore.get_report_summary

    Returns:
        Summary dict; without reports every count is zero, exists is False
        and the timestamp/reporter fields are left out
    """
    # If no results, return zeros
    if not rows:
        return {
            "success": True,
            "embarkId": embark_id,
            "exists": False,
            "counts": {report_type: 0 for report_type in REPORT_TYPES},
            "totalNegative": 0,
            "totalAll": 0
        }

    result = rows[0]
    counts = {
        report_type: int(result.get(f"{report_type}_count") or 0)
        for report_type in REPORT_TYPES
    }
    return {
        "success": True,
        "embarkId": result.get("embark_id", embark_id),
        "exists": True,
        "counts": counts,
        "totalNegative": negative_total(counts),
        "totalAll": int(result.get("total_reports") or 0),
        "firstReported": result.get("first_reported"),
        "lastReported": result.get("last_reported"),
        "uniqueReporters": int(result.get("unique_reporters") or 0)
    }

# Initialize rate limiter (bound to the app in create_app)
limiter = Limiter(get_remote_address, storage_uri=RATELIMIT_STORAGE_URI)

# All API routes live under /api and share the API rate limit
api = Blueprint('api', __name__, url_prefix='/api')
limiter.shared_limit(API_RATE_LIMIT, scope='api', error_message=API_RATE_LIMIT_MESSAGE)(api)

# API Endpoints

# Health check endpoint
@api.route('/health', methods=['GET'])
def health():
    return jsonify({"status": "ok", "message": "Topside Tracker API is running"}), 200

# Submit a new report
@api.route('/reports/submit', methods=['POST'])
@limiter.limit(REPORT_RATE_LIMIT, error_message=REPORT_RATE_LIMIT_MESSAGE, override_defaults=False)
def submit_report():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}
    embark_id = data.get('embarkId')
    report_type = data.get('reportType')
    reporter_id = data.get('reporterId')
    context = {'embark_id': embark_id, 'report_type': report_type}

    try:
        guard = _guard()
        store = _store()

        # Validate all inputs before touching the store
        is_valid, error_message = guard.validate_submission(embark_id, reporter_id, report_type)
        if not is_valid:
            log_rejection(error_message, 'validation', data)
            return error_response(error_message, 400)

        # Same reporter, same embark ID and type within the duplicate window
        try:
            duplicate = guard.is_duplicate(store, embark_id, reporter_id, report_type)
        except StoreError as e:
            log_error('duplicate_check', e, context)
            return error_response('Database error occurred', 500)

        if duplicate:
            log_rejection('Duplicate report', 'duplicate', data)
            return error_response('You have already submitted this report recently', 429)

        # Insert the report
        try:
            record = store.insert_report(embark_id, report_type, reporter_id)
        except StoreError as e:
            log_error('insert_report', e, context)
            return error_response('Failed to submit report', 500)

        return jsonify({
            "success": True,
            "message": "Report submitted successfully",
            "data": record
        }), 200
    except Exception as e:
        log_error('submit_report', e, context)
        return error_response('Internal server error', 500)

# Get report counts for a specific Embark ID
@api.route('/reports/<embark_id>', methods=['GET'])
def report_summary(embark_id):
    try:
        if not _guard().validate_embark_id(embark_id):
            return error_response(INVALID_EMBARK_ID_MESSAGE, 400)

        try:
            rows = _store().get_report_summary(embark_id)
        except StoreError as e:
            log_error('report_summary', e, {'embark_id': embark_id})
            return error_response('Failed to retrieve reports', 500)

        return jsonify(build_summary_response(embark_id, rows)), 200
    except Exception as e:
        log_error('report_summary_unexpected', e, {'embark_id': embark_id})
        return error_response('Internal server error', 500)

# Get report history for trends chart (last 30 days)
@api.route('/reports/<embark_id>/history', methods=['GET'])
def report_history(embark_id):
    try:
        guard = _guard()
        if not guard.validate_embark_id(embark_id):
            return error_response("Invalid Embark ID format", 400)

        since = history_cutoff(guard.now(), HISTORY_WINDOW_DAYS)
        try:
            history = _store().get_report_history(embark_id, since)
        except StoreError as e:
            log_error('report_history', e, {'embark_id': embark_id})
            return error_response('Failed to retrieve report history', 500)

        return jsonify({"success": True, "history": history}), 200
    except Exception as e:
        log_error('report_history_unexpected', e, {'embark_id': embark_id})
        return error_response('Internal server error', 500)

# --- Error Handlers ---

def register_error_handlers(app: Flask) -> None:
    # Unmatched routes and methods
    @app.errorhandler(404)
    @app.errorhandler(405)
    def not_found(e):
        return error_response('Route not found', 404)

    # Rate limiter rejections are plain text, not the JSON envelope
    @app.errorhandler(429)
    def rate_limited(e):
        return Response(e.description, status=429, mimetype='text/plain')

    # Anything else that escapes a handler
    @app.errorhandler(Exception)
    def unhandled(e):
        if isinstance(e, HTTPException):
            return e
        log_error('global', e, {'path': request.path, 'method': request.method})
        return error_response('Internal server error', 500)

def register_frontend_routes(app: Flask) -> None:
    # Named pages; other files come from the static folder
    def make_page_view(filename: str):
        def page():
            return send_from_directory(app.static_folder, filename)
        return page

    for path, filename in FRONTEND_PAGES.items():
        endpoint = 'page_' + (filename.rsplit('.', 1)[0])
        app.add_url_rule(path, endpoint, make_page_view(filename), methods=['GET'])

def create_app(
    store: Optional[ReportStore] = None,
    clock: Optional[Callable[[], datetime]] = None,
    config: Optional[Dict] = None
) -> Flask:
    """
    Build the Flask application.

    The store is created here once and shared by every request. Passing a
    store or clock replaces the defaults (the clock drives both the duplicate
    window and the history window).

    Args:
        store: Report store; defaults to a ReportStore on DB_FILE
        clock: Callable returning the current UTC datetime
        config: Extra Flask config values (e.g. RATELIMIT_ENABLED)

    Returns:
        Configured Flask app
    """
    clock = clock or utc_now
    frontend_dir = (config or {}).get('FRONTEND_DIR', FRONTEND_DIR)

    # Initialize Flask application
    app = Flask(__name__, static_folder=frontend_dir, static_url_path='')
    app.config['RATELIMIT_ENABLED'] = True
    if config:
        app.config.update(config)

    # Enable CORS for the front-end origins
    CORS(app, origins=ALLOWED_ORIGINS, methods=['GET', 'POST'], supports_credentials=True)

    if store is None:
        store = ReportStore(DB_FILE, clock=clock)
        store.init_db()
    app.extensions['report_store'] = store
    app.extensions['report_guard'] = ReportGuard(clock=clock)

    limiter.init_app(app)
    app.register_blueprint(api)
    register_frontend_routes(app)
    register_error_handlers(app)
    return app

# Main entry point to run the Flask app
if __name__ == '__main__':
    app = create_app()
    print(f"""
TOPSIDE TRACKER API
Server running on port {PORT}
Frontend: http://localhost:{PORT}
API: http://localhost:{PORT}/api
""")
    app.run(
        debug=False,
        host='0.0.0.0',
        port=PORT
    )

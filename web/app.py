#!/usr/bin/env python3
"""
ProductionPortal web service - Flask application exposing the factory
production APIs, the assistant functions and Prometheus metrics.
"""

from flask import Flask, request, jsonify, Response, g
from pathlib import Path
import sys
import os
import subprocess
import threading
import traceback
from datetime import datetime
from typing import List
import time
from contextlib import contextmanager

# Prometheus metrics
from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST

# Add the parent directory to Python path to import productionportal modules
sys.path.insert(0, str(Path(__file__).parent.parent))

from productionportal.core.v1 import providers
from productionportal.core.v1 import error_logger
from productionportal.core.v1.config import get_datarepo_path, get_service_key, PP_TOOL_VERSION
from productionportal.core.v1.gitutils import git_push, has_origin, is_git_repo
from productionportal.core.v1.store import DuplicateRecordError, table_relpath
from productionportal.core.v1.auth import AuthError, RateLimitedError, authenticate, auth_rate_limit, is_admin
from productionportal.core.v1.production import get_factory, factory_today, submit, SUBMISSION_TABLES
from productionportal.core.v1.control_room import (
    build_control_room,
    filter_tab,
    search,
    tab_counts,
    compute_kpis,
    needs_action_cards,
    po_detail,
    VIEW_TABS,
)
from productionportal.core.v1.po_state import workflow_tab_counts, workflow_tab_matches, WORKFLOW_TABS
from productionportal.core.v1.po_filters import (
    filters_from_params,
    apply_filters,
    derive_filter_options,
    count_active_filters,
)
from productionportal.core.v1.buyer import buyer_dashboard
from productionportal.core.v1.plans import catalogue
from productionportal.core.v1.billing import check_subscription
from productionportal.core.v1.mailer import send_billing_notification
from productionportal.core.v1.knowledge import ingest_document
from productionportal.core.v1.assistant import chat, record_feedback, generate_embedding_for_user
from productionportal.core.v1.schemas import (
    parse_body,
    ChatRequest,
    FeedbackRequest,
    IngestRequest,
    EmbeddingRequest,
    RateLimitRequest,
    BillingNotificationRequest,
    ErrorLogRequest,
)

app = Flask(__name__)
app.secret_key = os.environ.get('PP_WEB_SECRET', 'dev-only-insecure-secret')

# -----------------------
# Prometheus instrumentation
# -----------------------
_METRICS_ENV = os.environ.get('PP_METRICS_ENV', 'dev')
_SERVICE_NAME = os.environ.get('PP_SERVICE_NAME', 'productionportal-web')

HTTP_REQUESTS_TOTAL = Counter(
    'pp_http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status', 'env', 'service'],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    'pp_http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path', 'status', 'env', 'service'],
    buckets=(0.05, 0.1, 0.3, 1, 3, 10),
)

CHAT_REQUESTS_TOTAL = Counter(
    'pp_chat_requests_total',
    'Assistant chat requests by outcome',
    ['outcome'],
)

@app.before_request
def _metrics_before_request():
    try:
        g._metrics_t0 = time.time()
    except Exception:
        pass

@app.after_request
def _metrics_after_request(response: Response):
    try:
        t0 = getattr(g, '_metrics_t0', None)
        dt = (time.time() - t0) if t0 is not None else None
        method = str(request.method or 'GET')
        # Route rule keeps label cardinality bounded
        try:
            rule = request.url_rule.rule if getattr(request, 'url_rule', None) else None
        except Exception:
            rule = None
        path_label = str(rule or request.path or '/')
        status = str(getattr(response, 'status_code', 0))
        HTTP_REQUESTS_TOTAL.labels(method, path_label, status, _METRICS_ENV, _SERVICE_NAME).inc()
        if dt is not None:
            HTTP_REQUEST_DURATION_SECONDS.labels(method, path_label, status, _METRICS_ENV, _SERVICE_NAME).observe(dt)
    except Exception:
        # Never break responses on metrics errors
        pass
    return response

@app.get('/metrics')
def _metrics_endpoint():
    try:
        data = generate_latest()  # default registry
        return Response(response=data, status=200, mimetype=CONTENT_TYPE_LATEST)
    except Exception:
        return Response(response=b'metrics error', status=500, mimetype='text/plain')

@app.get('/healthz')
def healthz():
    return jsonify({'status': 'ok', 'version': PP_TOOL_VERSION})


# -----------------------
# Web autocommit helper
# Disable by setting environment variable: PP_WEB_AUTOCOMMIT=0
# -----------------------
def _env_flag(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None:
        return default
    return val.lower() in ('1', 'true', 'yes', 'on')


def _autocommit_enabled() -> bool:
    return _env_flag('PP_WEB_AUTOCOMMIT', True)


def _git_disabled() -> bool:
    return _env_flag('PP_GIT_DISABLED', False)


def _autopush_enabled() -> bool:
    return _env_flag('PP_WEB_AUTOPUSH', True)


def _autopush_async_enabled() -> bool:
    return _env_flag('PP_WEB_AUTOPUSH_ASYNC', True)


def _maybe_git_autocommit(datarepo_path: Path, message: str, paths: List[str]) -> bool:
    """If enabled and inside a git repo, stage the given paths (with -A) and commit.

    Returns True if a commit was created, False otherwise. Never raises.
    """
    try:
        if not _autocommit_enabled():
            return False
        if not is_git_repo(datarepo_path):
            return False
        for p in (paths or []):
            subprocess.run(['git', '-C', str(datarepo_path), 'add', '-A', '--', p], check=False)
        ts = datetime.now().isoformat(timespec='seconds')
        cm = subprocess.run(['git', '-C', str(datarepo_path), 'commit', '-m', f"{message} ({ts})"], capture_output=True)
        # Nothing to commit
        if cm.returncode != 0:
            return False
        return True
    except Exception:
        return False


def _extract_identity_from_headers(req) -> tuple[str | None, str | None]:
    """Best-effort (name, email) from X-Forwarded-User / X-Forwarded-Email.

    A user header that looks like an email doubles as the email; a missing
    name is derived from the email's local part.
    """
    try:
        user_val = (req.headers.get('X-Forwarded-User') or '').strip() or None
        email_val = (req.headers.get('X-Forwarded-Email') or '').strip() or None
        if not email_val and user_val and '@' in user_val:
            email_val = user_val
        name_val = user_val
        if not name_val and email_val:
            base = email_val.split('@', 1)[0]
            name_val = base.replace('.', ' ').replace('_', ' ').strip().title() or base
        if name_val and email_val:
            return name_val, email_val
        return None, None
    except Exception:
        return None, None


@contextmanager
def _with_git_identity(name: str, email: str):
    """Temporarily set GIT_AUTHOR_* and GIT_COMMITTER_* for subprocess git commands."""
    keys = ['GIT_AUTHOR_NAME', 'GIT_AUTHOR_EMAIL', 'GIT_COMMITTER_NAME', 'GIT_COMMITTER_EMAIL']
    prev = {k: os.environ.get(k) for k in keys}
    try:
        os.environ['GIT_AUTHOR_NAME'] = name
        os.environ['GIT_COMMITTER_NAME'] = name
        os.environ['GIT_AUTHOR_EMAIL'] = email
        os.environ['GIT_COMMITTER_EMAIL'] = email
        yield
    finally:
        for k, v in prev.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


_REPO_TXN_LOCK = threading.Lock()
_PUSH_LOCK = threading.Lock()


def _push_worker(datarepo_path: Path) -> bool:
    try:
        with _PUSH_LOCK:
            return git_push(datarepo_path)
    except Exception as e:
        app.logger.warning('autopush failed: %s', e)
        return False


def _spawn_async_push(datarepo_path: Path) -> None:
    th = threading.Thread(target=_push_worker, args=(datarepo_path,), daemon=True)
    th.start()


def _maybe_autopush(datarepo_path: Path, committed: bool) -> None:
    """Push new commits to origin when one is configured. Failures never fail the request."""
    if not committed or not _autopush_enabled() or not has_origin(datarepo_path):
        return
    if _autopush_async_enabled():
        _spawn_async_push(datarepo_path)
    else:
        _push_worker(datarepo_path)


def _run_repo_txn(datarepo_path: Path, mutate_fn, *, autocommit_message: str | None = None,
                  autocommit_paths: List[str] | None = None, user: dict | None = None):
    """Serialize datarepo writes: mutate -> autocommit under one lock, then push.

    Commits are attributed to the authenticated user when known, else to
    the proxy identity headers.
    """
    if _git_disabled():
        return mutate_fn()
    committed = False
    with _REPO_TXN_LOCK:
        name, email = None, None
        if user and user.get('email'):
            name, email = (user.get('full_name') or user['email']), user['email']
        else:
            name, email = _extract_identity_from_headers(request)

        def _do_mutate_and_autocommit():
            nonlocal committed
            r = mutate_fn()
            if autocommit_paths:
                committed = _maybe_git_autocommit(
                    datarepo_path, autocommit_message or '[productionPortal][web] Autocommit', autocommit_paths,
                )
            return r
        if name and email:
            with _with_git_identity(name, email):
                result = _do_mutate_and_autocommit()
        else:
            result = _do_mutate_and_autocommit()
    _maybe_autopush(datarepo_path, committed)
    return result


# -----------------------
# Request helpers
# -----------------------
def _error_status(e: Exception) -> int:
    if isinstance(e, AuthError):
        return 401
    if isinstance(e, RateLimitedError):
        return 429
    if isinstance(e, DuplicateRecordError):
        return 409
    if isinstance(e, PermissionError):
        return 403
    if isinstance(e, (LookupError, FileNotFoundError)):
        return 404
    if isinstance(e, ValueError):
        return 400
    return 500


def _report_server_error(e: Exception, user: dict | None = None) -> None:
    try:
        datarepo_path = get_datarepo_path()
    except Exception:
        datarepo_path = None
    if datarepo_path is None:
        app.logger.error(f"[productionPortal] {request.path}: {e}")
        return
    error_logger.log_error(
        str(e) or e.__class__.__name__,
        stack=traceback.format_exc(),
        source=f"web:{request.path}",
        url=request.url,
        user_agent=request.headers.get('User-Agent'),
        metadata={'method': request.method, 'user_id': (user or {}).get('id')},
        datarepo_path=datarepo_path,
        user_id=(user or {}).get('id'),
        factory_id=(user or {}).get('factory_id'),
    )


def _public_message(e: Exception, status: int) -> str:
    # Server-side failures are logged; clients only see a generic message
    if status == 500:
        return 'Internal server error'
    return str(e) or 'Unknown error'


def _function_error(e: Exception, user: dict | None = None):
    """JSON error body for /functions/* endpoints."""
    status = _error_status(e)
    if status == 500:
        _report_server_error(e, user)
    body = {'error': _public_message(e, status)}
    if isinstance(e, RateLimitedError):
        body['blocked_until'] = e.blocked_until
    return jsonify(body), status


def _api_error(e: Exception, user: dict | None = None):
    """JSON error body for /api/* endpoints."""
    status = _error_status(e)
    if status == 500:
        _report_server_error(e, user)
    body = {'success': False, 'error': _public_message(e, status)}
    if isinstance(e, DuplicateRecordError):
        body['code'] = e.code
    return jsonify(body), status


def _current_user(datarepo_path: Path) -> dict:
    return authenticate(datarepo_path, request.headers.get('Authorization'))


def _require_factory(user: dict) -> str:
    factory_id = user.get('factory_id')
    if not factory_id:
        raise PermissionError('No factory assigned')
    return factory_id


def _client_ip(req) -> str:
    fwd = (req.headers.get('X-Forwarded-For') or '').split(',')[0].strip()
    return fwd or req.headers.get('X-Real-IP') or req.remote_addr or 'unknown'


# -----------------------
# Functions (assistant, billing, auth)
# -----------------------
@app.route('/functions/chat', methods=['POST'])
def fn_chat():
    user = None
    try:
        datarepo_path = get_datarepo_path()
        user = _current_user(datarepo_path)
        body = parse_body(ChatRequest, request.get_json(force=True, silent=True))
        res = chat(
            datarepo_path,
            user,
            body.message,
            conversation_id=body.conversation_id,
            language=body.language,
            embed=providers.generate_embedding,
            complete=providers.complete_chat,
        )
        CHAT_REQUESTS_TOTAL.labels('no_evidence' if res.get('no_evidence') else 'answered').inc()
        return jsonify(res)
    except Exception as e:
        CHAT_REQUESTS_TOTAL.labels('error').inc()
        return _function_error(e, user)


@app.route('/functions/chat-feedback', methods=['POST'])
def fn_chat_feedback():
    user = None
    try:
        datarepo_path = get_datarepo_path()
        user = _current_user(datarepo_path)
        body = parse_body(FeedbackRequest, request.get_json(force=True, silent=True))
        return jsonify(record_feedback(datarepo_path, user, body.message_id, body.feedback, body.comment))
    except Exception as e:
        return _function_error(e, user)


@app.route('/functions/ingest-document', methods=['POST'])
def fn_ingest_document():
    user = None
    try:
        datarepo_path = get_datarepo_path()
        user = _current_user(datarepo_path)
        body = parse_body(IngestRequest, request.get_json(force=True, silent=True))

        def _mutate():
            return ingest_document(
                datarepo_path,
                body.document_id,
                user_roles=user.get('roles') or [],
                content=body.content,
                embed=providers.generate_embedding,
            )
        res = _run_repo_txn(
            datarepo_path,
            _mutate,
            autocommit_message=f"[productionPortal][web] Ingest document {body.document_id}",
            autocommit_paths=[table_relpath('knowledge_chunks'), table_relpath('document_ingestion_queue')],
            user=user,
        )
        return jsonify(res)
    except Exception as e:
        return _function_error(e, user)


@app.route('/functions/check-subscription', methods=['POST'])
def fn_check_subscription():
    user = None
    try:
        datarepo_path = get_datarepo_path()
        user = _current_user(datarepo_path)
        return jsonify(check_subscription(datarepo_path, user))
    except Exception as e:
        return _function_error(e, user)


@app.route('/functions/send-billing-notification', methods=['POST'])
def fn_send_billing_notification():
    """Callable with the service key (schedulers) or by a factory admin."""
    user = None
    try:
        datarepo_path = get_datarepo_path()
        authz = request.headers.get('Authorization') or ''
        service_key = get_service_key()
        if not (service_key and authz == f"Bearer {service_key}"):
            user = _current_user(datarepo_path)
            if not is_admin(user):
                raise PermissionError('Admin access required')
        body = parse_body(BillingNotificationRequest, request.get_json(force=True, silent=True))
        return jsonify(send_billing_notification(datarepo_path, body.model_dump()))
    except Exception as e:
        return _function_error(e, user)


@app.route('/functions/auth-rate-limit', methods=['POST'])
def fn_auth_rate_limit():
    try:
        datarepo_path = get_datarepo_path()
        body = parse_body(RateLimitRequest, request.get_json(force=True, silent=True))
        res = auth_rate_limit(
            datarepo_path,
            action=body.action,
            ip=_client_ip(request),
            email=body.email,
            factory_id=body.factoryId,
            user_agent=request.headers.get('User-Agent'),
        )
        return jsonify(res)
    except Exception as e:
        return _function_error(e)


@app.route('/functions/generate-embedding', methods=['POST'])
def fn_generate_embedding():
    user = None
    try:
        datarepo_path = get_datarepo_path()
        user = _current_user(datarepo_path)
        body = parse_body(EmbeddingRequest, request.get_json(force=True, silent=True))
        return jsonify(generate_embedding_for_user(user, body.text, embed=providers.generate_embedding))
    except Exception as e:
        return _function_error(e, user)


# -----------------------
# PO control room and buyer portal
# -----------------------
@app.route('/api/po-control-room')
def api_po_control_room():
    user = None
    try:
        datarepo_path = get_datarepo_path()
        user = _current_user(datarepo_path)
        factory_id = _require_factory(user)
        today = factory_today(datarepo_path, get_factory(datarepo_path, factory_id))

        tab = (request.args.get('tab') or 'all').strip()
        if tab not in VIEW_TABS:
            raise ValueError(f"tab must be one of {', '.join(VIEW_TABS)}")
        workflow = (request.args.get('workflow') or '').strip()
        if workflow and workflow not in WORKFLOW_TABS:
            raise ValueError(f"workflow must be one of {', '.join(WORKFLOW_TABS)}")
        filters = filters_from_params(request.args)

        orders = build_control_room(datarepo_path, factory_id, today)
        searched = search(orders, request.args.get('q'))
        narrowed = apply_filters(searched, filters, today)
        visible = filter_tab(narrowed, tab, today)
        if workflow:
            visible = [po for po in visible if workflow_tab_matches(po, workflow)]

        return jsonify({
            'success': True,
            'today': today.isoformat(),
            'orders': visible,
            'kpis': compute_kpis(orders),
            'tab_counts': tab_counts(narrowed, today),
            'workflow_tab_counts': workflow_tab_counts(narrowed),
            'needs_action': needs_action_cards(orders, today),
            'filter_options': derive_filter_options(orders),
            'active_filter_count': count_active_filters(filters),
        })
    except Exception as e:
        return _api_error(e, user)


@app.route('/api/po-control-room/<work_order_id>')
def api_po_detail(work_order_id):
    user = None
    try:
        datarepo_path = get_datarepo_path()
        user = _current_user(datarepo_path)
        factory_id = _require_factory(user)
        res = po_detail(datarepo_path, factory_id, work_order_id)
        return jsonify({'success': True, 'result': res})
    except Exception as e:
        return _api_error(e, user)


@app.route('/api/buyer/pos')
def api_buyer_pos():
    user = None
    try:
        datarepo_path = get_datarepo_path()
        user = _current_user(datarepo_path)
        factory = get_factory(datarepo_path, user['factory_id']) if user.get('factory_id') else None
        today = factory_today(datarepo_path, factory)
        res = buyer_dashboard(datarepo_path, user['id'], today)
        return jsonify({'success': True, **res})
    except Exception as e:
        return _api_error(e, user)


# -----------------------
# Writes
# -----------------------
@app.route('/api/submissions/<form_type>', methods=['POST'])
def api_submit(form_type):
    user = None
    try:
        datarepo_path = get_datarepo_path()
        user = _current_user(datarepo_path)
        if form_type not in SUBMISSION_TABLES:
            raise ValueError(f"Unknown form type: {form_type}")
        payload = request.get_json(force=True, silent=True)
        if payload is None:
            payload = {}
        if not isinstance(payload, dict):
            raise ValueError('payload must be an object')
        factory_id = _require_factory(user)
        if payload.get('factory_id') and payload['factory_id'] != factory_id:
            raise PermissionError('Cannot submit for a different factory')
        payload['factory_id'] = factory_id

        def _mutate():
            return submit(datarepo_path, form_type, payload, user_id=user['id'])
        res = _run_repo_txn(
            datarepo_path,
            _mutate,
            autocommit_message=f"[productionPortal][web] Submit {form_type}",
            autocommit_paths=[table_relpath(form_type)],
            user=user,
        )
        return jsonify({'success': True, 'result': res, 'autocommit': bool(_autocommit_enabled())}), 201
    except Exception as e:
        return _api_error(e, user)


@app.route('/api/error-logs', methods=['POST'])
def api_error_logs():
    """Client-side error reports. Anonymous reports are accepted."""
    try:
        datarepo_path = get_datarepo_path()
        user = None
        if request.headers.get('Authorization'):
            try:
                user = authenticate(datarepo_path, request.headers.get('Authorization'))
            except AuthError:
                user = None
        body = parse_body(ErrorLogRequest, request.get_json(force=True, silent=True), 'message is required')
        reporter = error_logger.ErrorLogger(datarepo_path)
        if user:
            reporter.set_user_context(user.get('id'), user.get('factory_id'))
        row = reporter.log_error(
            body.message,
            stack=body.stack,
            source=body.source,
            severity=body.severity,
            metadata=body.metadata,
            url=body.url,
            user_agent=request.headers.get('User-Agent'),
        )
        return jsonify({'success': True, 'stored': row is not None})
    except Exception as e:
        return _api_error(e)


@app.get('/api/plans')
def api_plans():
    return jsonify({'success': True, 'plans': catalogue()})


@app.errorhandler(404)
def not_found(error):
    return jsonify({'success': False, 'error': 'Not found'}), 404

@app.errorhandler(500)
def internal_error(error):
    try:
        error_logger.log_error(str(error), source=f"web:{request.path}", url=request.url, datarepo_path=get_datarepo_path())
    except Exception:
        app.logger.error(f"[productionPortal] Unhandled error on {request.path}: {error}")
    return jsonify({'success': False, 'error': 'Internal server error'}), 500

if __name__ == '__main__':
    # Determine port (env PORT or --port flag), default 8080
    port = int(os.environ.get('PORT', '8080'))
    if '--port' in sys.argv:
        try:
            idx = sys.argv.index('--port')
            if idx + 1 < len(sys.argv):
                port = int(sys.argv[idx + 1])
        except Exception:
            pass

    print("🏭 Starting ProductionPortal web service...")
    print(f"📍 API available at: http://localhost:{port}")
    print("🧵 Production tracking for garment factories")
    print("=" * 50)

    debug_mode = os.environ.get('FLASK_ENV') == 'development' or '--debug' in sys.argv

    try:
        app.run(
            debug=debug_mode,
            host='0.0.0.0',
            port=port,
            use_reloader=debug_mode
        )
    except KeyboardInterrupt:
        print("\n👋 Shutting down ProductionPortal web service...")
    except Exception as e:
        print(f"❌ Error starting web server: {e}")
        sys.exit(1)

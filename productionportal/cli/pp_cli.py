import sys
import os
import argparse
import pathlib
import json
import yaml

from productionportal import __version__
from productionportal.core.v1.config import get_datarepo_path
from productionportal.core.v1 import repo as repo_ops
from productionportal.core.v1.production import (
    create_factory,
    list_factories,
    get_factory,
    factory_today,
    create_line,
    list_lines,
    create_work_order,
    get_work_order,
    list_work_orders,
    assign_line,
    submit,
    SUBMISSION_TABLES,
)
from productionportal.core.v1.control_room import (
    build_control_room,
    filter_tab,
    search,
    tab_counts,
    compute_kpis,
    po_detail,
    VIEW_TABS,
)
from productionportal.core.v1.auth import create_user, find_user_by_email, issue_token, get_user, ROLES
from productionportal.core.v1.buyer import grant_access
from productionportal.core.v1.plans import catalogue
from productionportal.core.v1.knowledge import add_document, ingest_document, search_knowledge, DOCUMENT_TYPES
from productionportal.core.v1.assistant import chat as assistant_chat, seed_role_features
from productionportal.core.v1.offline_queue import OfflineQueue, FORM_TYPES as QUEUE_FORM_TYPES
from productionportal.core.v1.network import PortalClient, network_error_message
from productionportal.core.v1 import providers
from productionportal.core.v1.auth_storage import TOKEN_KEY, cli_session_storage, sweep_auth_tokens


class PPArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that prints full help on error instead of short usage."""
    def error(self, message):
        self.print_help()
        sys.stderr.write(f"\nError: {message}\n")
        raise SystemExit(2)


def main(argv=None):
    # Root parser and global options (git-like)
    env_format = os.getenv("PP_FORMAT", "human").lower()
    if env_format not in ("human", "json", "yaml"):
        env_format = "human"
    parser = PPArgumentParser(prog="pp", description="ProductionPortal CLI")
    parser.add_argument("-R", "--repo", dest="repo", default=os.getenv("PP_REPO"), help="Override datarepo path")
    parser.add_argument(
        "-F", "--format", dest="format", choices=["human", "json", "yaml"], default=env_format,
        help="Output format (default from PP_FORMAT or 'human')"
    )
    parser.add_argument("-q", "--quiet", action="count", default=0, help="Decrease verbosity")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Increase verbosity")
    parser.add_argument("--version", action="version", version=f"ProductionPortal {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=False, parser_class=PPArgumentParser)

    # init
    init_parser = subparsers.add_parser("init", help="Initialize a new datarepo at PATH")
    init_parser.add_argument("path", nargs="?", default=None, help="Target directory for new datarepo (optional)")
    init_parser.add_argument("--github-url", dest="github_url", default=None, help="GitHub repository URL to clone (optional)")
    init_parser.add_argument("--name", dest="name", default=None, help="Name for the new local datarepo when not cloning (optional)")
    init_parser.add_argument("--timezone", dest="timezone", default=None, help="Default factory timezone (e.g. Asia/Dhaka)")

    # web
    web_parser = subparsers.add_parser("web", help="Run the ProductionPortal web service")
    web_parser.add_argument("--port", type=int, default=8080, help="Port to bind (default 8080)")
    web_parser.add_argument("--host", default="0.0.0.0", help="Host to bind (default 0.0.0.0)")
    web_parser.add_argument("--debug", action="store_true", help="Enable Flask debug mode")

    # factory group
    factory_parser = subparsers.add_parser("factory", help="Factory accounts")
    fac_sub = factory_parser.add_subparsers(dest="fac_cmd", required=False, parser_class=PPArgumentParser)
    fac_add = fac_sub.add_parser("add", help="Create a factory (starts a trial)")
    fac_add.add_argument("name", help="Factory name")
    fac_add.add_argument("--timezone", dest="timezone", default=None, help="IANA timezone for the factory")
    fac_sub.add_parser("ls", aliases=["list"], help="List factories")

    # line group
    line_parser = subparsers.add_parser("line", help="Production lines")
    line_sub = line_parser.add_subparsers(dest="line_cmd", required=False, parser_class=PPArgumentParser)
    line_add = line_sub.add_parser("add", help="Create a production line")
    line_add.add_argument("--factory", required=True, help="Factory id")
    line_add.add_argument("line_id", help="Short line code (e.g. L1)")
    line_add.add_argument("--name", default=None)
    line_add.add_argument("--unit", dest="unit_name", default=None)
    line_add.add_argument("--floor", dest="floor_name", default=None)
    line_ls = line_sub.add_parser("ls", aliases=["list"], help="List production lines")
    line_ls.add_argument("--factory", required=True, help="Factory id")
    line_ls.add_argument("--all", dest="include_inactive", action="store_true", help="Include inactive lines")

    # po group
    po_parser = subparsers.add_parser("po", help="Purchase orders (work orders)")
    po_sub = po_parser.add_subparsers(dest="po_cmd", required=False, parser_class=PPArgumentParser)
    po_add = po_sub.add_parser("add", help="Create a work order")
    po_add.add_argument("--factory", required=True, help="Factory id")
    po_add.add_argument("po_number", help="PO number")
    po_add.add_argument("--buyer", required=True)
    po_add.add_argument("--style", required=True)
    po_add.add_argument("--qty", dest="order_qty", required=True, type=int, help="Order quantity")
    po_add.add_argument("--ex-factory", dest="planned_ex_factory", default=None, help="Planned ex-factory date (YYYY-MM-DD)")
    po_add.add_argument("--line", dest="line_id", default=None, help="Line record id")
    po_add.add_argument("--item", default=None)
    po_add.add_argument("--color", default=None)
    po_assign = po_sub.add_parser("assign", help="Assign a line to a work order")
    po_assign.add_argument("work_order_id")
    po_assign.add_argument("line_id", help="Line record id")
    po_ls = po_sub.add_parser("ls", aliases=["list"], help="List active work orders")
    po_ls.add_argument("--factory", required=True, help="Factory id")
    po_show = po_sub.add_parser("show", aliases=["view"], help="Show a PO's submissions, pipeline and quality")
    po_show.add_argument("work_order_id")

    # submit
    submit_parser = subparsers.add_parser("submit", help="Record a department submission")
    submit_parser.add_argument("form_type", choices=list(SUBMISSION_TABLES))
    submit_parser.add_argument("pairs", nargs="*", help="key=value fields")
    submit_parser.add_argument("--user", dest="user_id", default=None, help="Submitting user id")

    # control-room
    cr_parser = subparsers.add_parser("control-room", help="PO control room for a factory")
    cr_parser.add_argument("--factory", required=True, help="Factory id")
    cr_parser.add_argument("--tab", choices=list(VIEW_TABS), default="all")
    cr_parser.add_argument("--search", dest="term", default=None, help="Match PO number, buyer or style")

    # user group
    user_parser = subparsers.add_parser("user", help="Users and API tokens")
    user_sub = user_parser.add_subparsers(dest="user_cmd", required=False, parser_class=PPArgumentParser)
    user_add = user_sub.add_parser("add", help="Create a user")
    user_add.add_argument("email")
    user_add.add_argument("--name", dest="full_name", default=None)
    user_add.add_argument("--factory", dest="factory_id", default=None)
    user_add.add_argument("--role", dest="roles", action="append", choices=list(ROLES), help="Repeatable; default worker")
    user_token = user_sub.add_parser("token", help="Issue a bearer token for a user")
    user_token.add_argument("email")
    user_grant = user_sub.add_parser("grant", help="Give a buyer access to a work order")
    user_grant.add_argument("email")
    user_grant.add_argument("work_order_id")

    # plans
    subparsers.add_parser("plans", help="Show the subscription plan catalogue")

    # kb group
    kb_parser = subparsers.add_parser("kb", help="Assistant knowledge base")
    kb_sub = kb_parser.add_subparsers(dest="kb_cmd", required=False, parser_class=PPArgumentParser)
    kb_add = kb_sub.add_parser("add", help="Register a knowledge document")
    kb_add.add_argument("title")
    kb_add.add_argument("--type", dest="document_type", choices=list(DOCUMENT_TYPES), default="manual")
    grp = kb_add.add_mutually_exclusive_group(required=False)
    grp.add_argument("--content", default=None, help="Inline text content")
    grp.add_argument("--file", dest="file_path", default=None, help="Path relative to the datarepo documents/ folder")
    kb_add.add_argument("--factory", dest="factory_id", default=None, help="Factory id (omit for a global document)")
    kb_add.add_argument("--language", choices=["en", "bn"], default="en")
    kb_ingest = kb_sub.add_parser("ingest", help="Chunk and embed a document")
    kb_ingest.add_argument("document_id")
    kb_search = kb_sub.add_parser("search", help="Semantic search over ingested chunks")
    kb_search.add_argument("query")
    kb_search.add_argument("--factory", dest="factory_id", default=None)
    kb_search.add_argument("--threshold", type=float, default=0.3)
    kb_search.add_argument("--count", type=int, default=10)

    # queue group (offline submissions)
    queue_parser = subparsers.add_parser("queue", help="Offline submission queue")
    q_sub = queue_parser.add_subparsers(dest="queue_cmd", required=False, parser_class=PPArgumentParser)
    q_add = q_sub.add_parser("add", help="Queue a submission for later sync")
    q_add.add_argument("form_type", choices=list(QUEUE_FORM_TYPES))
    q_add.add_argument("pairs", nargs="*", help="key=value fields")
    q_add.add_argument("--factory", dest="factory_id", required=True)
    q_add.add_argument("--user", dest="user_id", required=True)
    q_sub.add_parser("ls", aliases=["list"], help="List queued submissions")
    q_sync = q_sub.add_parser("sync", help="Replay queued submissions against a web service")
    q_sync.add_argument("--url", default=os.getenv("PP_API_URL", "http://localhost:8080"))
    q_sync.add_argument("--token", default=os.getenv("PP_API_TOKEN"), help="Defaults to the token saved by 'pp login'")
    q_clear = q_sub.add_parser("clear", help="Drop queued submissions")
    q_clear.add_argument("--failed", action="store_true", help="Only drop failed submissions")
    q_sub.add_parser("retry", help="Reset failed submissions to pending")

    # login / logout (client session for queue sync)
    login_parser = subparsers.add_parser("login", help="Store an API token for queue sync")
    login_parser.add_argument("token")
    login_parser.add_argument("--remember-me", dest="remember_me", action="store_true", help="Keep the token across shell sessions")
    subparsers.add_parser("logout", help="Forget stored API tokens")

    # chat
    chat_parser = subparsers.add_parser("chat", help="Ask the production assistant")
    chat_parser.add_argument("message")
    chat_parser.add_argument("--as", dest="email", required=True, help="Email of the asking user")
    chat_parser.add_argument("--conversation", dest="conversation_id", default=None)
    chat_parser.add_argument("--language", choices=["en", "bn"], default=None)

    args, unknown = parser.parse_known_args(argv)

    if unknown:
        parser.print_help()
        sys.exit(2)

    # Helper: resolve repo path honoring -R/--repo
    def _repo_path() -> pathlib.Path:
        if getattr(args, "repo", None):
            return pathlib.Path(args.repo).expanduser().resolve()
        return get_datarepo_path()

    def _fmt() -> str:
        return args.format

    def _fail(e) -> None:
        print(f"[productionPortal] Error: {e}")
        sys.exit(1)

    def _emit(data, human) -> None:
        """Print data as json/yaml, or call human() for the default format."""
        fmt = _fmt()
        if fmt == "json":
            print(json.dumps(data, indent=2, default=str))
        elif fmt == "yaml":
            print(yaml.safe_dump(data, sort_keys=False))
        else:
            human()

    def _parse_pairs(pairs_list):
        fields = {}
        for pair in pairs_list or []:
            if "=" not in pair:
                print(f"[productionPortal] Error: invalid key=value pair '{pair}'")
                sys.exit(1)
            k, v = pair.split("=", 1)
            fields[k.strip()] = v.strip()
        return fields

    def cmd_init(args):
        github_url = (getattr(args, "github_url", None) or "").strip() or None
        if args.path:
            target_path = pathlib.Path(args.path)
        else:
            datarepos_dir = pathlib.Path("datarepos")
            datarepos_dir.mkdir(exist_ok=True)
            if github_url:
                repo_name = github_url.split("/")[-1].replace(".git", "").strip() or None
            else:
                repo_name = (getattr(args, "name", None) or "").strip() or None
            if not repo_name:
                repo_name = input("Enter a name for the new local datarepo: ").strip()
                if not repo_name:
                    print("[productionPortal] Error: datarepo name cannot be empty.")
                    sys.exit(1)
            target_path = datarepos_dir / repo_name

        if target_path.exists() and os.listdir(str(target_path)):
            print(f"[productionPortal] Error: Target directory '{target_path}' already exists and is not empty.")
            sys.exit(1)

        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            repo_path = repo_ops.create_or_clone(target_path, github_url)
            repo_ops.write_datarepo_config(repo_path, timezone=args.timezone)
            repo_ops.set_default_datarepo(repo_path)
            seeded = seed_role_features(repo_path)
            repo_ops.initial_commit_and_optional_push(repo_path, has_remote=bool(github_url))
        except Exception as e:
            _fail(e)
        _emit(
            {"path": str(repo_path), "role_features_seeded": seeded},
            lambda: print(f"[productionPortal] Initialized datarepo at {repo_path}"),
        )

    def cmd_web(args):
        try:
            # Imported lazily so the CLI works without Flask installed
            project_root = pathlib.Path(__file__).parent.parent.parent
            sys.path.insert(0, str(project_root))
            from web.app import app
        except ImportError as e:
            missing = getattr(e, "name", "") or ""
            if missing == "flask":
                print("[productionPortal] Error: Flask is not installed.")
            else:
                print(f"[productionPortal] Error: could not import web app: {e}")
            sys.exit(1)

        print("🏭 Starting ProductionPortal web service...")
        print(f"📍 API available at: http://localhost:{args.port}")
        print("=" * 50)
        try:
            app.run(debug=args.debug, host=args.host, port=args.port, use_reloader=args.debug)
        except KeyboardInterrupt:
            print("\n👋 Shutting down ProductionPortal web service...")
        except Exception as e:
            if "Address already in use" in str(e):
                print(f"[productionPortal] Error: Port {args.port} is already in use.")
            else:
                print(f"[productionPortal] Error starting web server: {e}")
            sys.exit(1)

    # Factories and lines
    def cmd_factory_add(args):
        try:
            fac = create_factory(_repo_path(), args.name, timezone_name=args.timezone)
        except Exception as e:
            _fail(e)
        _emit(fac, lambda: print(f"[productionPortal] Created factory '{fac['name']}' ({fac['id']}), trial ends {fac['trial_end_date']}"))

    def cmd_factory_list(args):
        facs = list_factories(_repo_path())

        def human():
            if not facs:
                print("[productionPortal] No factories found.")
                return
            for f in facs:
                print(f"{f['id']}  {f['name']}  [{f.get('subscription_status')}/{f.get('subscription_tier')}]")
        _emit(facs, human)

    def cmd_line_add(args):
        try:
            line = create_line(
                _repo_path(), args.factory, args.line_id,
                name=args.name, unit_name=args.unit_name, floor_name=args.floor_name,
            )
        except Exception as e:
            _fail(e)
        _emit(line, lambda: print(f"[productionPortal] Created line '{line['line_id']}' ({line['id']})"))

    def cmd_line_list(args):
        lines = list_lines(_repo_path(), args.factory, active_only=not args.include_inactive)

        def human():
            if not lines:
                print("[productionPortal] No lines found.")
                return
            for ln in lines:
                where = " / ".join(x for x in (ln.get("unit_name"), ln.get("floor_name")) if x)
                print(f"{ln['id']}  {ln['line_id']:<8} {ln.get('name') or ''}  {where}".rstrip())
        _emit(lines, human)

    # Work orders
    def cmd_po_add(args):
        try:
            wo = create_work_order(
                _repo_path(), args.factory,
                po_number=args.po_number,
                buyer=args.buyer,
                style=args.style,
                order_qty=args.order_qty,
                planned_ex_factory=args.planned_ex_factory,
                line_id=args.line_id,
                item=args.item,
                color=args.color,
            )
        except Exception as e:
            _fail(e)
        _emit(wo, lambda: print(f"[productionPortal] Created PO '{wo['po_number']}' ({wo['id']})"))

    def cmd_po_assign(args):
        try:
            row = assign_line(_repo_path(), args.work_order_id, args.line_id)
        except Exception as e:
            _fail(e)
        _emit(row, lambda: print(f"[productionPortal] Assigned line {args.line_id} to {args.work_order_id}"))

    def cmd_po_list(args):
        wos = list_work_orders(_repo_path(), args.factory)

        def human():
            if not wos:
                print("[productionPortal] No work orders found.")
                return
            for wo in wos:
                print(f"{wo['po_number']:<14} {wo.get('buyer') or '-':<16} {wo.get('style') or '-':<14} "
                      f"qty={wo.get('order_qty') or 0:<8} ex={wo.get('planned_ex_factory') or '-'}  {wo['id']}")
        _emit(wos, human)

    def cmd_po_show(args):
        datarepo_path = _repo_path()
        try:
            wo = get_work_order(datarepo_path, args.work_order_id)
            detail = po_detail(datarepo_path, wo["factory_id"], wo["id"])
        except Exception as e:
            _fail(e)
        out = {"work_order": wo, **detail}
        _emit(out, lambda: print(yaml.safe_dump(out, sort_keys=False)))

    def cmd_submit(args):
        try:
            rec = submit(_repo_path(), args.form_type, _parse_pairs(args.pairs), user_id=args.user_id)
        except Exception as e:
            _fail(e)
        _emit(rec, lambda: print(f"[productionPortal] Stored {args.form_type} submission {rec['id']}"))

    def cmd_control_room(args):
        datarepo_path = _repo_path()
        try:
            today = factory_today(datarepo_path, get_factory(datarepo_path, args.factory))
            orders = build_control_room(datarepo_path, args.factory, today)
        except Exception as e:
            _fail(e)
        visible = filter_tab(search(orders, args.term), args.tab, today)
        out = {"kpis": compute_kpis(orders), "tab_counts": tab_counts(orders, today), "orders": visible}

        def human():
            k = out["kpis"]
            print(f"Active POs: {k['activeOrders']}  Qty: {k['totalQty']:,}  Sewn: {k['sewingOutput']:,}  "
                  f"Finished: {k['finishedOutput']:,}  Extras: {k['totalExtras']:,}")
            print("Tabs: " + "  ".join(f"{t}={n}" for t, n in out["tab_counts"].items()))
            for po in visible:
                health = po["health"]
                print(f"{po['po_number']:<14} {po['progressPct']:>3.0f}%  {health['status']:<15} "
                      f"{po.get('workflowState') or '-':<12} {'; '.join(health['reasons'])}")
        _emit(out, human)

    # Users
    def cmd_user_add(args):
        try:
            user = create_user(
                _repo_path(), args.email,
                full_name=args.full_name, factory_id=args.factory_id, roles=args.roles,
            )
        except Exception as e:
            _fail(e)
        _emit(user, lambda: print(f"[productionPortal] Created user {user['email']} ({user['id']}) roles={','.join(user['roles'])}"))

    def _user_by_email(datarepo_path, email):
        user = find_user_by_email(datarepo_path, email)
        if user is None:
            _fail(f"User not found: {email}")
        return user

    def cmd_user_token(args):
        datarepo_path = _repo_path()
        user = _user_by_email(datarepo_path, args.email)
        try:
            token = issue_token(datarepo_path, user["id"])
        except Exception as e:
            _fail(e)
        _emit({"user_id": user["id"], "token": token}, lambda: print(token))

    def cmd_user_grant(args):
        datarepo_path = _repo_path()
        user = _user_by_email(datarepo_path, args.email)
        try:
            row = grant_access(datarepo_path, user["id"], args.work_order_id)
        except Exception as e:
            _fail(e)
        _emit(row, lambda: print(f"[productionPortal] Granted {args.email} access to {args.work_order_id}"))

    def cmd_plans(args):
        plans = catalogue()

        def human():
            for p in plans:
                print(f"{p['name']:<12} {p['price_monthly_display']:>8}/mo  {p['price_yearly_display']:>9}/yr  "
                      f"lines: {p['max_lines_display']}")
        _emit(plans, human)

    # Knowledge base
    def cmd_kb_add(args):
        try:
            doc = add_document(
                _repo_path(),
                title=args.title,
                document_type=args.document_type,
                content=args.content,
                file_path=args.file_path,
                factory_id=args.factory_id,
                language=args.language,
            )
        except Exception as e:
            _fail(e)
        _emit(doc, lambda: print(f"[productionPortal] Added document '{doc['title']}' ({doc['id']})"))

    def cmd_kb_ingest(args):
        try:
            res = ingest_document(_repo_path(), args.document_id, user_roles=["admin"])
        except Exception as e:
            _fail(e)
        _emit(res, lambda: print(f"[productionPortal] Ingested {res['chunks_created']} chunk(s) for {args.document_id}"))

    def cmd_kb_search(args):
        try:
            embedding = providers.generate_embedding(args.query)["embedding"]
            hits = search_knowledge(
                _repo_path(), embedding,
                threshold=args.threshold, count=args.count, factory_id=args.factory_id,
            )
        except Exception as e:
            _fail(e)

        def human():
            if not hits:
                print("[productionPortal] No matching knowledge found.")
                return
            for h in hits:
                where = f" / {h['section_heading']}" if h.get("section_heading") else ""
                print(f"[{h['similarity']:.2f}] {h['document_title']}{where}")
                print(f"    {h['content'][:160]}")
        _emit(hits, human)

    # Offline queue
    def cmd_queue_add(args):
        queue = OfflineQueue()
        try:
            item_id = queue.add(args.form_type, args.form_type, _parse_pairs(args.pairs), args.factory_id, args.user_id)
        except Exception as e:
            _fail(e)
        _emit({"id": item_id}, lambda: print(f"[productionPortal] Queued {args.form_type} submission {item_id}"))

    def cmd_queue_list(args):
        queue = OfflineQueue()
        items = queue.items()

        def human():
            if not items:
                print("[productionPortal] Offline queue is empty.")
                return
            for it in items:
                err = f"  ({it['error_message']})" if it.get("error_message") else ""
                print(f"{it['id']}  {it['form_type']:<28} {it['status']:<8} retries={it['retry_count']}{err}")
            print(f"pending={queue.pending_count()} failed={queue.failed_count()}")
        _emit(items, human)

    def cmd_queue_sync(args):
        token = args.token or cli_session_storage().get_item(TOKEN_KEY)
        if not token:
            _fail("an API token is required (--token, PP_API_TOKEN or 'pp login')")
        client = PortalClient(args.url, token)
        queue = OfflineQueue()
        try:
            res = queue.process(lambda table, payload: client.insert(table, payload))
        except Exception as e:
            _fail(network_error_message(e))
        _emit(res, lambda: print(
            f"[productionPortal] Synced {len(res['successful'])} submission(s); {len(res['failed'])} failed"
        ))

    def cmd_queue_clear(args):
        queue = OfflineQueue()
        if args.failed:
            queue.clear_failed()
        else:
            queue.clear()
        _emit({"cleared": True}, lambda: print("[productionPortal] Offline queue cleared"))

    def cmd_queue_retry(args):
        queue = OfflineQueue()
        queue.retry_failed()
        _emit({"pending": queue.pending_count()}, lambda: print(
            f"[productionPortal] {queue.pending_count()} submission(s) pending"
        ))

    def cmd_login(args):
        session = cli_session_storage()
        session.set_remember_me(args.remember_me)
        session.set_item(TOKEN_KEY, args.token)
        where = "persistent" if args.remember_me else "session"
        _emit({"stored": where}, lambda: print(f"[productionPortal] Token saved to {where} storage"))

    def cmd_logout(args):
        session = cli_session_storage()
        removed = sweep_auth_tokens(session.persistent) + sweep_auth_tokens(session.session)
        session.set_remember_me(False)
        _emit({"removed": removed}, lambda: print(f"[productionPortal] Removed {removed} stored token(s)"))

    def cmd_chat(args):
        datarepo_path = _repo_path()
        user = _user_by_email(datarepo_path, args.email)
        try:
            res = assistant_chat(
                datarepo_path,
                get_user(datarepo_path, user["id"]),
                args.message,
                conversation_id=args.conversation_id,
                language=args.language,
            )
        except Exception as e:
            _fail(e)

        def human():
            print(res["message"])
            for c in res["citations"]:
                print(f"  [{c['document_title']}]")
            if res["suggested_questions"]:
                print("Suggested:")
                for q in res["suggested_questions"]:
                    print(f"  - {q}")
            print(f"(conversation {res['conversation_id']})")
        _emit(res, human)

    # Dispatch via table
    cmd = args.command
    sub_attr = {
        "factory": "fac_cmd",
        "line": "line_cmd",
        "po": "po_cmd",
        "user": "user_cmd",
        "kb": "kb_cmd",
        "queue": "queue_cmd",
    }.get(cmd)
    sub = getattr(args, sub_attr, None) if sub_attr else None

    DISPATCH = {
        ("init", None): cmd_init,
        ("web", None): cmd_web,
        ("factory", "add"): cmd_factory_add,
        ("factory", "ls"): cmd_factory_list,
        ("factory", "list"): cmd_factory_list,
        ("line", "add"): cmd_line_add,
        ("line", "ls"): cmd_line_list,
        ("line", "list"): cmd_line_list,
        ("po", "add"): cmd_po_add,
        ("po", "assign"): cmd_po_assign,
        ("po", "ls"): cmd_po_list,
        ("po", "list"): cmd_po_list,
        ("po", "show"): cmd_po_show,
        ("po", "view"): cmd_po_show,
        ("submit", None): cmd_submit,
        ("control-room", None): cmd_control_room,
        ("user", "add"): cmd_user_add,
        ("user", "token"): cmd_user_token,
        ("user", "grant"): cmd_user_grant,
        ("plans", None): cmd_plans,
        ("kb", "add"): cmd_kb_add,
        ("kb", "ingest"): cmd_kb_ingest,
        ("kb", "search"): cmd_kb_search,
        ("queue", "add"): cmd_queue_add,
        ("queue", "ls"): cmd_queue_list,
        ("queue", "list"): cmd_queue_list,
        ("queue", "sync"): cmd_queue_sync,
        ("queue", "clear"): cmd_queue_clear,
        ("queue", "retry"): cmd_queue_retry,
        ("login", None): cmd_login,
        ("logout", None): cmd_logout,
        ("chat", None): cmd_chat,
    }

    handler = DISPATCH.get((cmd, sub))
    if handler:
        handler(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()

"""
Proxmox User Administration Web Interface

This Flask application provides a web interface for managing Proxmox realm
users and short-lived VMs. It allows administrators to:
- List, create and delete realm users
- Onboard users in bulk from a CSV file
- Deploy VMs from templates, check their status and tear them down

The JSON handlers under /api forward each request to Proxmox through
pveadmin and reshape the responses; nothing is stored locally.
"""

import hmac
import logging
import os
from functools import wraps
from typing import Any, Dict, Optional

from flask import (
    Blueprint,
    Flask,
    current_app,
    jsonify,
    make_response,
    redirect,
    render_template,
    request,
    session,
)

from pveadmin import (
    AdminManager,
    AllocationExhaustedError,
    ConfigError,
    NotFoundError,
    OwnershipError,
    PveAdminError,
    RemoteError,
    ValidationError,
    load_secrets,
)

logger = logging.getLogger(__name__)

bp = Blueprint("admin", __name__)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, proxy-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def get_admin() -> AdminManager:
    return current_app.config["PVEADMIN"]


def error_status(error: PveAdminError) -> int:
    """HTTP status for an error raised by pveadmin."""
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, OwnershipError):
        return 403
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, AllocationExhaustedError):
        return 503
    if isinstance(error, RemoteError):
        return 502
    return 500


def admin_required(f):
    """Ensure the admin is logged in; API calls get 401, pages a redirect."""

    @wraps(f)
    def wrapper(*args, **kwargs):
        if not session.get("admin"):
            if request.path.startswith("/api/"):
                return jsonify({"error": "Not authenticated"}), 401
            return redirect(f"/login?next={request.path}")
        return f(*args, **kwargs)

    return wrapper


def json_body() -> Dict[str, Any]:
    return request.get_json(silent=True) or {}


@bp.after_request
def disable_caching(response):
    # Admin state must always be fetched fresh
    if request.path.startswith("/api/"):
        for header, value in NO_CACHE_HEADERS.items():
            response.headers[header] = value
    return response


@bp.app_errorhandler(PveAdminError)
def handle_admin_error(e: PveAdminError):
    status = error_status(e)
    if status >= 500:
        logger.error(f"{request.method} {request.path} failed: {e}")
    else:
        logger.info(f"{request.method} {request.path} rejected: {e}")
    return jsonify({"error": str(e)}), status


@bp.route("/health")
def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        JSON response with system status
    """
    admin = get_admin()
    try:
        # Test basic Proxmox connectivity
        admin.users.list_users()
        return {
            "status": "healthy",
            "proxmox_connected": True,
            "transport": admin.config.transport,
            "realm": admin.realm,
        }
    except RemoteError as e:
        logger.error(f"Health check failed: {e}")
        return {
            "status": "unhealthy",
            "proxmox_connected": False,
            "transport": admin.config.transport,
            "error": str(e),
        }, 503


@bp.route("/")
def home():
    """Home page with navigation links."""
    return render_template("page.html", content=render_template("home.html"))


@bp.route("/login", methods=["GET", "POST"])
def login():
    """
    Admin login page and authentication handler.

    GET: Display login form
    POST: Process login credentials

    Returns:
        GET: Login form page
        POST: Redirect to admin area or back to login with error
    """
    if request.method == "GET":
        flash = request.cookies.get("flash")
        resp = make_response(
            render_template(
                "page.html", content=render_template("login.html", flash=flash)
            )
        )
        if flash:
            resp.set_cookie("flash", "", expires=0)
        return resp

    expected = current_app.config["ADMIN_PASSWORD"]
    supplied = request.form.get("password", "")
    if expected and hmac.compare_digest(supplied.encode(), expected.encode()):
        session["admin"] = True
        target = request.args.get("next", "/users")
        if not target.startswith("/") or target.startswith("//"):
            target = "/users"
        return redirect(target)

    logger.warning(f"Failed admin login from {request.remote_addr}")
    resp = make_response(redirect("/login"))
    resp.set_cookie("flash", "Incorrect Password")
    return resp


@bp.route("/logout")
def logout():
    """Logout handler - clears the admin session."""
    session.pop("admin", None)
    return redirect("/")


@bp.route("/users")
@admin_required
def users_page():
    """User overview with search, delete and a CSV import box."""
    return render_template(
        "page.html",
        content=render_template("users.html", realm=get_admin().realm),
    )


@bp.route("/import")
@admin_required
def import_page():
    """Dedicated bulk import page showing per-row results."""
    return render_template(
        "page.html",
        content=render_template("import.html", realm=get_admin().realm),
    )


@bp.route("/vms")
@admin_required
def vms_page():
    """Template list, deploy form and status/stop tools."""
    return render_template("page.html", content=render_template("vms.html"))


@bp.route("/api/users", methods=["GET"])
@admin_required
def list_users():
    """Users of the configured realm, sorted by email or userid."""
    admin = get_admin()
    users = admin.users.list_realm_users(admin.realm)
    return jsonify({"users": [u.to_dict() for u in users]})


@bp.route("/api/users", methods=["POST"])
@admin_required
def create_user():
    """
    Create one realm user.

    Expects JSON payload: {
        "username": "jdoe",        # or "userid": "jdoe@pve"
        "fullName": "John Doe",
        "password": "at least 8 chars",
        "email": "optional"
    }
    """
    admin = get_admin()
    data = json_body()
    userid = str(data.get("userid") or "").strip()
    if not userid:
        username = str(data.get("username") or "").strip()
        if not username:
            raise ValidationError("Missing username")
        userid = f"{username}@{admin.realm}"

    user = admin.users.create_user(
        userid,
        str(data.get("fullName") or "").strip(),
        str(data.get("password") or ""),
        email=(str(data.get("email") or "").strip() or None),
    )
    return jsonify({"ok": True, "user": user.to_dict()}), 201


@bp.route("/api/users", methods=["DELETE"])
@admin_required
def delete_user():
    """Delete a user identified solely by {"userid": "..."}."""
    userid = str(json_body().get("userid") or "").strip()
    if not userid:
        return jsonify({"error": "Missing userid"}), 400
    out = get_admin().users.delete_user(userid)
    return jsonify({"ok": True, "userid": out["userid"]})


@bp.route("/api/import-users", methods=["POST"])
@admin_required
def import_users():
    """
    Bulk user import.

    Accepts either JSON {"csv": "<text>"} or a multipart upload named "file".

    Returns:
        {"total", "success", "failed", "results": [...]}
    """
    upload = request.files.get("file")
    if upload is not None:
        csv_text = upload.read().decode("utf-8-sig", errors="replace")
    else:
        csv_text = str(json_body().get("csv") or request.form.get("csv") or "")

    summary = get_admin().imports.import_users(csv_text)
    return jsonify(summary.to_dict())


@bp.route("/api/templates", methods=["GET"])
@admin_required
def list_templates():
    templates = get_admin().vms.list_templates()
    return jsonify({"templates": [t.to_dict() for t in templates]})


@bp.route("/api/vms", methods=["GET"])
@admin_required
def active_vms():
    """VMIDs currently associated with ?username=."""
    username = request.args.get("username", "").strip()
    if not username:
        raise ValidationError("Missing username")
    vmids = get_admin().vms.list_active_vmids_for_user(username)
    return jsonify({"username": username, "vmids": vmids})


@bp.route("/api/vms", methods=["POST"])
@admin_required
def deploy_vm():
    """
    Deploy a VM from a template.

    Expects JSON payload: {"template": "kali", "username": "jdoe",
    "memory": 2048, "cores": 2}. Blocks while the VM boots and its address
    is looked up.
    """
    data = json_body()
    record = get_admin().vms.deploy(
        str(data.get("template") or ""),
        str(data.get("username") or ""),
        memory=data.get("memory", 2048),
        cores=data.get("cores", 2),
    )
    return jsonify(record.to_dict()), 201


@bp.route("/api/vms/<vmid>", methods=["GET"])
@admin_required
def vm_status(vmid: str):
    return jsonify(get_admin().vms.status(vmid).to_dict())


@bp.route("/api/vms/<vmid>", methods=["DELETE"])
@admin_required
def stop_vm(vmid: str):
    """Stop and destroy a VM on behalf of {"username": "..."}."""
    username = str(json_body().get("username") or "").strip()
    if not username:
        raise ValidationError("Missing username")
    return jsonify(get_admin().vms.stop(vmid, username))


@bp.app_errorhandler(404)
def page_not_found(e):
    """Handle 404 errors with custom page."""
    if request.path.startswith("/api/"):
        return jsonify({"error": "Not found"}), 404
    return (
        render_template(
            "page.html",
            content="<h2>Page not found. Please check spelling and try again</h2>",
        ),
        404,
    )


@bp.app_errorhandler(500)
def uhoh_yikes(e):
    """Handle 500 errors."""
    if request.path.startswith("/api/"):
        return jsonify({"error": "Internal Server Error"}), 500
    return (
        render_template("page.html", content="<h2>Internal Server Error</h2>"),
        500,
    )


def create_app(
    admin: Optional[AdminManager] = None,
    web_config: Optional[Dict[str, Any]] = None,
) -> Flask:
    """
    Build the Flask application.

    Args:
        admin: Ready AdminManager. If None, one is built from secrets.toml.
        web_config: The [web] section (admin_password, secret_key). If None,
            it is read from secrets.toml alongside the AdminManager.

    Returns:
        Configured Flask app
    """
    if admin is None or web_config is None:
        logger.info("Loading configuration using pveadmin")
        try:
            secrets = load_secrets()
        except FileNotFoundError:
            logger.error(
                "Configuration file 'secrets.toml' not found. Copy secrets.toml.example and configure."
            )
            raise
        if admin is None:
            admin = AdminManager(secrets)
        if web_config is None:
            web_config = secrets.get("web", {})

    app = Flask(__name__)
    app.config["PVEADMIN"] = admin
    app.config["ADMIN_PASSWORD"] = web_config.get("admin_password", "")
    app.secret_key = web_config.get("secret_key") or os.urandom(32)
    if not app.config["ADMIN_PASSWORD"]:
        logger.warning("No [web] admin_password configured; admin login is disabled")
    app.register_blueprint(bp)
    return app


if __name__ == "__main__":
    # Configure logging for development and debugging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.FileHandler("pveadmin.log"), logging.StreamHandler()],
    )
    try:
        create_app().run(host="0.0.0.0", port=7878, debug=True)
    except ConfigError as e:
        logger.error(f"Failed to load configuration: {e}")
        raise

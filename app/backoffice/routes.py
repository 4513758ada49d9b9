"""Unauthenticated entry points: landing page and load balancer health checks."""
from flask import Blueprint, g, jsonify, redirect, render_template, url_for

bp = Blueprint("routes", __name__)


@bp.get("/")
def index():
    if g.get("current_user"):
        return redirect(url_for("admin.index"))
    return render_template("public/index.html")


@bp.get("/health")
def health():
    # process liveness only; /admin/integrations runs the dependency checks
    return jsonify(ok=True)


@bp.get("/healthz")
def healthz():
    return "ok", 200, {"Content-Type": "text/plain; charset=utf-8"}

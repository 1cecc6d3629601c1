"""
Campus Request Routing
Reporting blueprint.

Endpoints (all scoped to the caller; ``since`` / ``until`` narrow by submission):
    GET /api/v1/reports/status               status breakdown + per-form counts
    GET /api/v1/reports/sla                  SLA compliance per step
    GET /api/v1/reports/approvers            approver performance
    GET /api/v1/reports/processing-time      mean submit-to-decision hours per form
    GET /api/v1/reports/admin-stats          system totals (admin only)
"""

from flask import Blueprint, jsonify, request

from campusflow.blueprints import as_datetime
from campusflow.middleware.identity import current_scope, current_user
from campusflow.services import report_service

report_bp = Blueprint("reports", __name__, url_prefix="/api/v1/reports")


def _window():
    return (
        as_datetime(request.args.get("since"), "since"),
        as_datetime(request.args.get("until"), "until"),
    )


@report_bp.route("/status", methods=["GET"])
def status_report():
    current_user()
    since, until = _window()
    return jsonify(report_service.status_breakdown(current_scope(), since, until))


@report_bp.route("/sla", methods=["GET"])
def sla_report():
    current_user()
    since, until = _window()
    return jsonify(report_service.sla_compliance(current_scope(), since, until))


@report_bp.route("/approvers", methods=["GET"])
def approver_report():
    current_user()
    since, until = _window()
    return jsonify({"approvers": report_service.approver_performance(current_scope(), since, until)})


@report_bp.route("/processing-time", methods=["GET"])
def processing_time_report():
    current_user()
    since, until = _window()
    return jsonify({"forms": report_service.processing_time(current_scope(), since, until)})


@report_bp.route("/admin-stats", methods=["GET"])
def admin_stats():
    current_user()
    return jsonify(report_service.admin_stats(current_scope()))

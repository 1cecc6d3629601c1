"""Official document rendering.

A form may carry ``document_template``: Jinja2 text with placeholders such
as ``{{ reference_no }}`` or ``{{ data.start_date }}``.  On final approval
the lifecycle engine renders it to a PDF with reportlab and stores it as an
attachment of the request.
"""

import io
import logging
from xml.sax.saxutils import escape

from jinja2 import TemplateError
from jinja2.sandbox import SandboxedEnvironment
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import cm
from reportlab.lib.enums import TA_CENTER
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer

from campusflow.core.exceptions import DependencyError

logger = logging.getLogger(__name__)

_env = SandboxedEnvironment(autoescape=False, keep_trailing_newline=False)


def _styles():
    styles = getSampleStyleSheet()
    styles.add(ParagraphStyle(
        name="DocumentTitle",
        parent=styles["Heading1"],
        fontSize=18,
        spaceAfter=24,
        alignment=TA_CENTER,
    ))
    return styles


def render_text(template: str, variables: dict) -> str:
    try:
        return _env.from_string(template).render(**variables)
    except TemplateError as exc:
        raise DependencyError("document_renderer", f"template error: {exc}") from exc


def render_document(template: str, variables: dict) -> bytes:
    """Render ``template`` with ``variables`` into PDF bytes.

    Raises:
        DependencyError: template or PDF generation failed.
    """
    text = render_text(template, variables)
    styles = _styles()

    story = []
    title = variables.get("title")
    if title:
        story.append(Paragraph(escape(str(title)), styles["DocumentTitle"]))
    for block in text.split("\n\n"):
        block = block.strip()
        if not block:
            continue
        story.append(Paragraph(escape(block).replace("\n", "<br/>"), styles["Normal"]))
        story.append(Spacer(1, 0.4 * cm))

    buffer = io.BytesIO()
    try:
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            topMargin=2 * cm,
            bottomMargin=2 * cm,
            leftMargin=2 * cm,
            rightMargin=2 * cm,
            title=str(title or "Official document"),
        )
        doc.build(story or [Spacer(1, 1)])
    except Exception as exc:
        logger.exception("PDF generation failed")
        raise DependencyError("document_renderer", str(exc)) from exc
    return buffer.getvalue()


def document_variables(req) -> dict:
    """Variables exposed to a form's document template."""
    requester = req.requester
    department = requester.department if requester else None
    return {
        "title": req.form.name if req.form else "Official document",
        "reference_no": req.reference_no,
        "status": req.status,
        "submitted_at": req.submitted_at.strftime("%Y-%m-%d") if req.submitted_at else "",
        "requester_name": requester.full_name if requester else "",
        "university_id": requester.university_id if requester else "",
        "department": department.name if department else "",
        "college": department.college.name if department and department.college else "",
        "data": dict(req.submission_data or {}),
    }

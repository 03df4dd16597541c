from flask import Blueprint, request, jsonify

from labquote.decorators import login_required, roles_required, current_actor
from labquote.errors import ValidationError
from labquote.models.email_template import EmailTemplate
from labquote.services import quote_actions
from labquote.pricing import price_for_quote
from labquote import templating

template_bp = Blueprint("email_template", __name__)


@template_bp.route("/email-templates", methods=["GET"])
@login_required
@roles_required("requester", "admin")
def template_list():
    actor = current_actor()
    templates = (
        EmailTemplate.query
        .filter_by(user_id=actor.user_id)
        .order_by(EmailTemplate.is_default.desc(), EmailTemplate.name)
        .all()
    )
    return jsonify({
        "templates": [t.to_dict() for t in templates],
        "builtin_default": templating.DEFAULT_TEMPLATE,
    })


@template_bp.route("/email-templates", methods=["POST"])
@login_required
@roles_required("requester", "admin")
def template_create():
    data = request.get_json(silent=True) or {}
    template = templating.create_template(
        current_actor().user_id,
        data.get("name"),
        data.get("subject"),
        data.get("body"),
        lab_id=data.get("lab_id"),
        is_default=bool(data.get("is_default")),
    )
    return jsonify(template.to_dict()), 201


@template_bp.route("/email-templates/<int:template_id>/default", methods=["POST"])
@login_required
@roles_required("requester", "admin")
def template_set_default(template_id):
    template = templating.set_default_template(current_actor().user_id, template_id)
    return jsonify(template.to_dict())


@template_bp.route("/email-templates/preview", methods=["POST"])
@login_required
def template_preview():
    """Render a template against a quote (or against explicit variables) without sending anything."""
    data = request.get_json(silent=True) or {}
    actor = current_actor()
    variables = data.get("variables") or {}
    if not isinstance(variables, dict):
        raise ValidationError("variables must be an object")
    if data.get("quote_id"):
        quote = quote_actions.get_quote(actor, data["quote_id"])
        items = list(quote.items)
        variables = {**templating.build_quote_variables(quote, items, price_for_quote(quote, items)), **variables}
        template = {"subject": data.get("subject"), "body": data.get("body")}
        if not template["subject"] and not template["body"]:
            template = templating.select_template(quote.user_id, quote.lab_id)
    else:
        template = {"subject": data.get("subject"), "body": data.get("body")}
    rendered = templating.render(template, variables)
    return jsonify({
        "subject": rendered.subject,
        "body": rendered.body,
        "html": templating.to_html(rendered.body),
        "unresolved": templating.unresolved_tokens(rendered.subject + "\n" + rendered.body),
    })

# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Family endpoints: registration, CPF search, institution links and LGPD consent.
"""

from flask import request, jsonify, current_app
from flask_openapi3 import APIBlueprint, Tag
from opentelemetry import trace
import logging

from models.entities import UserContext
from models.requests import (
    CreateFamilyRequest,
    UpdateFamilyRequest,
    LinkFamilyRequest,
    GiveConsentRequest,
    RevokeConsentRequest,
    FamilyPath,
    FamilyInstitutionPath,
    CpfPath
)
from middleware.auth import require_jwt, require_permission
from services.families import present_family
from utils.request import RequestParser

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

families_tag = Tag(name="Families", description="Family registration and association")
families_bp = APIBlueprint(
    'families',
    __name__,
    url_prefix='/api/families',
    abp_tags=[families_tag]
)


def _family_resource(family, link, user_context: UserContext):
    return current_app.hal_formatter.format_resource(present_family(family, link), "family", user_context)


@families_bp.get('')
@require_jwt
@require_permission('family:read')
def list_families(user_context: UserContext):
    """
    List families with pagination and search.

    Institution users see only the families associated with their institution.
    """
    with tracer.start_as_current_span(
        "families.list_endpoint",
        attributes={"user.id": user_context.user_id, "user.role": user_context.role}
    ):
        pagination = RequestParser.get_pagination_params()
        search = RequestParser.get_search()
        institution_id = request.args.get('institution_id') or None

        result = current_app.family_service.list_families(
            user_context,
            page=pagination['page'],
            page_size=pagination['page_size'],
            search=search,
            institution_id=institution_id
        )

        filters = {key: value for key, value in (("search", search), ("institution_id", institution_id)) if value}
        response = current_app.hal_formatter.format_collection(
            result.items, "family", result.total, result.page, result.page_size, user_context, filters
        )
        return jsonify(response), 200


@families_bp.post('')
@require_jwt
@require_permission('family:create')
def create_family(user_context: UserContext):
    """Register a family; institution users link it to their own institution."""
    family_request = RequestParser.parse_model(CreateFamilyRequest)
    family = current_app.family_service.create_family(family_request, user_context)
    link = current_app.family_service.get_link(family.id)
    current_app.report_service.invalidate(user_context, link.institution_id if link else None)
    return jsonify(_family_resource(family, link, user_context)), 201


@families_bp.get('/search/<cpf>')
@require_jwt
@require_permission('family:read')
def search_by_cpf(user_context: UserContext, path: CpfPath):
    """
    Look a family up by CPF.

    The ``scenario`` field tells whether the family is unregistered,
    unassociated, served by the caller or served by another institution.
    """
    result = current_app.family_service.search_by_cpf(path.cpf, user_context)
    if result["family"] is not None:
        result["family"] = current_app.hal_formatter.format_resource(result["family"], "family", user_context)
    result["_links"] = {"self": {"href": f"/api/families/search/{path.cpf}"}}
    return jsonify(result), 200


@families_bp.get('/<family_id>')
@require_jwt
@require_permission('family:read')
def get_family(user_context: UserContext, path: FamilyPath):
    family, link = current_app.family_service.get_visible_family(path.family_id, user_context)
    return jsonify(_family_resource(family, link, user_context)), 200


@families_bp.put('/<family_id>')
@require_jwt
@require_permission('family:update')
def update_family(user_context: UserContext, path: FamilyPath):
    update_request = RequestParser.parse_model(UpdateFamilyRequest)
    family = current_app.family_service.update_family(path.family_id, update_request, user_context)
    link = current_app.family_service.get_link(family.id)
    return jsonify(_family_resource(family, link, user_context)), 200


@families_bp.delete('/<family_id>')
@require_jwt
@require_permission('family:delete')
def delete_family(user_context: UserContext, path: FamilyPath):
    family_service = current_app.family_service
    family = family_service.get_family(path.family_id)
    link = family_service.get_link(path.family_id)
    family_service.delete_family(path.family_id, user_context)
    current_app.report_service.invalidate(
        user_context, link.institution_id if link else None, family.blocked_by_institution_id
    )
    return '', 204


@families_bp.post('/<family_id>/link')
@require_jwt
@require_permission('family:link')
def link_family(user_context: UserContext, path: FamilyPath):
    """
    Associate the family with an institution.

    Fails with ``FAMILY_ALREADY_ASSOCIATED`` while another institution serves it.
    """
    link_request = RequestParser.parse_model(LinkFamilyRequest, required=False)
    link = current_app.family_service.link(path.family_id, link_request.institution_id, user_context)
    family = current_app.family_service.get_family(path.family_id)
    current_app.report_service.invalidate(user_context, link.institution_id)
    return jsonify(_family_resource(family, link, user_context)), 200


@families_bp.delete('/<family_id>/link')
@require_jwt
@require_permission('family:link')
def unlink_family(user_context: UserContext, path: FamilyPath):
    link = current_app.family_service.get_link(path.family_id)
    removed = current_app.family_service.unlink(path.family_id, request.args.get('institution_id'), user_context)
    if removed:
        current_app.report_service.invalidate(user_context, link.institution_id if link else None)
    return jsonify({"family_id": path.family_id, "removed": removed}), 200


@families_bp.delete('/<family_id>/institutions/<institution_id>')
@require_jwt
@require_permission('family:link')
def unlink_family_from_institution(user_context: UserContext, path: FamilyInstitutionPath):
    removed = current_app.family_service.unlink(path.family_id, path.institution_id, user_context)
    if removed:
        current_app.report_service.invalidate(user_context, path.institution_id)
    return jsonify({"family_id": path.family_id, "institution_id": path.institution_id, "removed": removed}), 200


@families_bp.post('/<family_id>/consent')
@require_jwt
@require_permission('family:update')
def give_consent(user_context: UserContext, path: FamilyPath):
    """Record digital LGPD consent or a signed printed term."""
    consent_request = RequestParser.parse_model(GiveConsentRequest, required=False)
    family = current_app.family_service.give_consent(
        path.family_id, user_context, term_id=consent_request.term_id, signed=consent_request.term_signed
    )
    link = current_app.family_service.get_link(family.id)
    return jsonify(_family_resource(family, link, user_context)), 200


@families_bp.post('/<family_id>/consent/revoke')
@require_jwt
@require_permission('family:update')
def revoke_consent(user_context: UserContext, path: FamilyPath):
    revoke_request = RequestParser.parse_model(RevokeConsentRequest, required=False)
    family = current_app.family_service.revoke_consent(path.family_id, user_context, revoke_request.reason)
    link = current_app.family_service.get_link(family.id)
    logger.info(
        "Family consent revoked",
        extra={"family_id": family.id, "user_id": user_context.user_id}
    )
    return jsonify(_family_resource(family, link, user_context)), 200

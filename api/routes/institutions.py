# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Institution management endpoints (admin only).
"""

from flask import jsonify, current_app
from flask_openapi3 import APIBlueprint, Tag
from opentelemetry import trace
import logging

from models.entities import Institution, UserContext
from models.requests import CreateInstitutionRequest, UpdateInstitutionRequest, InstitutionPath
from models.responses import InstitutionResponse
from middleware.auth import require_jwt, require_permission
from utils.request import RequestParser

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

institutions_tag = Tag(name="Institutions", description="Institution management operations")
institutions_bp = APIBlueprint(
    'institutions',
    __name__,
    url_prefix='/api/institutions',
    abp_tags=[institutions_tag]
)


def _present(institution: Institution):
    return InstitutionResponse(**institution.model_dump()).to_dict()


@institutions_bp.get('')
@require_jwt
@require_permission('institution:read')
def list_institutions(user_context: UserContext):
    """List institutions with pagination and name search."""
    with tracer.start_as_current_span(
        "institutions.list_endpoint",
        attributes={"user.id": user_context.user_id}
    ) as span:
        pagination = RequestParser.get_pagination_params()
        search = RequestParser.get_search()

        result = current_app.institution_service.list_institutions(
            page=pagination['page'], page_size=pagination['page_size'], search=search
        )
        span.set_attribute("institutions.total", result.total)

        response = current_app.hal_formatter.format_collection(
            [_present(institution) for institution in result.items],
            "institution", result.total, result.page, result.page_size, user_context,
            {"search": search} if search else None
        )
        return jsonify(response), 200


@institutions_bp.post('')
@require_jwt
@require_permission('institution:create')
def create_institution(user_context: UserContext):
    """
    Create an institution together with its login account.

    The account uses the institution's email and the given password.
    """
    institution_request = RequestParser.parse_model(CreateInstitutionRequest)
    institution = current_app.institution_service.create_institution(institution_request, user_context)
    current_app.report_service.invalidate(user_context)
    return jsonify(current_app.hal_formatter.format_resource(_present(institution), "institution", user_context)), 201


@institutions_bp.get('/<institution_id>')
@require_jwt
@require_permission('institution:read')
def get_institution(user_context: UserContext, path: InstitutionPath):
    institution = current_app.institution_service.get_institution(path.institution_id)
    return jsonify(current_app.hal_formatter.format_resource(_present(institution), "institution", user_context)), 200


@institutions_bp.put('/<institution_id>')
@require_jwt
@require_permission('institution:update')
def update_institution(user_context: UserContext, path: InstitutionPath):
    update_request = RequestParser.parse_model(UpdateInstitutionRequest)
    institution = current_app.institution_service.update_institution(path.institution_id, update_request, user_context)
    return jsonify(current_app.hal_formatter.format_resource(_present(institution), "institution", user_context)), 200


@institutions_bp.delete('/<institution_id>')
@require_jwt
@require_permission('institution:delete')
def delete_institution(user_context: UserContext, path: InstitutionPath):
    """Rejected with 409 while any family is associated with the institution."""
    current_app.institution_service.delete_institution(path.institution_id, user_context)
    current_app.report_service.invalidate(user_context, path.institution_id)
    logger.info(
        "Institution deleted",
        extra={"institution_id": path.institution_id, "user_id": user_context.user_id}
    )
    return '', 204

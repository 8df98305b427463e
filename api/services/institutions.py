# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Institution management and the login accounts provisioned with them.
"""

import re
import logging
from typing import Optional
from opentelemetry import trace
from pymongo import ASCENDING

from models.entities import Institution, User, UserContext
from models.enums import UserRole
from models.requests import CreateInstitutionRequest, UpdateInstitutionRequest
from middleware.error_handler import ConflictException, NotFoundException
from .audit import AuditService
from .auth import AuthService
from .mongodb import MongoDBService, PaginationResult, DuplicateDocumentError, to_document, from_document

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

INSTITUTIONS = "institutions"
USERS = "users"
LINKS = "institution_families"

DUPLICATE_EMAIL_MESSAGE = "Já existe uma instituição ou usuário com este e-mail"
HAS_FAMILIES_MESSAGE = "Instituição possui famílias associadas e não pode ser excluída"


class InstitutionService:
    """Admin CRUD for institutions."""

    def __init__(self, mongo_service: MongoDBService, audit_service: AuditService, auth_service: AuthService):
        self.mongo_service = mongo_service
        self.audit_service = audit_service
        self.auth_service = auth_service

    def get_institution(self, institution_id: str) -> Institution:
        document = self.mongo_service.find_by_id(INSTITUTIONS, institution_id)
        if not document:
            raise NotFoundException(f"Institution {institution_id} not found")
        return Institution(**from_document(document))

    def create_institution(self, request: CreateInstitutionRequest, user_context: UserContext) -> Institution:
        """
        Create an institution and its login account.

        The institution is removed again when the account cannot be created,
        so no institution exists without a way to sign in.
        """
        with tracer.start_as_current_span("institutions.create") as span:
            if self.mongo_service.find_one(USERS, {"email": request.email}):
                raise ConflictException(DUPLICATE_EMAIL_MESSAGE)

            institution = Institution(
                name=request.name,
                address=request.address,
                phone=request.phone,
                email=request.email,
                responsible_name=request.responsible_name,
                created_by=user_context.user_id,
                updated_by=user_context.user_id
            )
            try:
                self.mongo_service.create(
                    INSTITUTIONS, to_document(institution.model_dump()), user_context.user_id, doc_id=institution.id
                )
            except DuplicateDocumentError:
                raise ConflictException(DUPLICATE_EMAIL_MESSAGE)
            span.set_attribute("institution.id", institution.id)

            user = User(
                email=request.email,
                name=request.responsible_name or request.name,
                password_hash=self.auth_service.hash_password(request.password),
                role=UserRole.INSTITUTION,
                institution_id=institution.id,
                created_by=user_context.user_id,
                updated_by=user_context.user_id
            )
            try:
                self.mongo_service.create(USERS, to_document(user.model_dump()), user_context.user_id, doc_id=user.id)
            except DuplicateDocumentError:
                self._rollback(institution, "duplicate account email")
                raise ConflictException(DUPLICATE_EMAIL_MESSAGE)
            except Exception as e:
                self._rollback(institution, str(e))
                raise

            self.audit_service.log_action(
                user_context, "institution", institution.id, "create", after=institution.model_dump(mode="json")
            )
            self.audit_service.log_action(
                user_context, "user", user.id, "create",
                after={"email": user.email, "role": user.role, "institution_id": institution.id}
            )
            logger.info(
                "Institution created with login account",
                extra={"institution_id": institution.id, "user_id": user.id}
            )
            return institution

    def _rollback(self, institution: Institution, reason: str) -> None:
        logger.error(
            "Institution account creation failed, removing institution",
            extra={"institution_id": institution.id, "reason": reason}
        )
        self.mongo_service.hard_delete_by_id(INSTITUTIONS, institution.id)

    def update_institution(
        self,
        institution_id: str,
        request: UpdateInstitutionRequest,
        user_context: UserContext
    ) -> Institution:
        with tracer.start_as_current_span("institutions.update") as span:
            span.set_attribute("institution.id", institution_id)
            institution = self.get_institution(institution_id)
            changes = request.model_dump(exclude_unset=True)
            if not changes:
                return institution

            if changes.get("email") and changes["email"] != institution.email:
                existing = self.mongo_service.find_one(INSTITUTIONS, {"email": changes["email"]})
                if existing and existing["id"] != institution_id:
                    raise ConflictException(DUPLICATE_EMAIL_MESSAGE)

            try:
                self.mongo_service.update_by_id(INSTITUTIONS, institution_id, to_document(changes), user_context.user_id)
            except DuplicateDocumentError:
                raise ConflictException(DUPLICATE_EMAIL_MESSAGE)

            updated = self.get_institution(institution_id)
            self.audit_service.log_action(
                user_context, "institution", institution_id, "update",
                before=institution.model_dump(mode="json"), after=updated.model_dump(mode="json")
            )
            return updated

    def delete_institution(self, institution_id: str, user_context: UserContext) -> None:
        """Soft delete; refused while any family is associated."""
        with tracer.start_as_current_span("institutions.delete") as span:
            span.set_attribute("institution.id", institution_id)
            institution = self.get_institution(institution_id)

            if self.mongo_service.count(LINKS, {"institutionId": institution_id}):
                raise ConflictException(HAS_FAMILIES_MESSAGE)

            self.mongo_service.soft_delete_by_id(INSTITUTIONS, institution_id, user_context.user_id)
            for account in self.mongo_service.find(USERS, {"institutionId": institution_id}):
                self.mongo_service.update_by_id(USERS, account["id"], {"status": "inactive"}, user_context.user_id)

            self.audit_service.log_action(
                user_context, "institution", institution_id, "delete", before=institution.model_dump(mode="json")
            )

    def list_institutions(self, page: int = 1, page_size: int = 20, search: Optional[str] = None) -> PaginationResult:
        filters = {}
        if search:
            filters["name"] = {"$regex": re.escape(search.strip()), "$options": "i"}
        result = self.mongo_service.paginate(
            INSTITUTIONS, page=page, page_size=page_size, filters=filters,
            sort_by="name", sort_order=ASCENDING
        )
        result.items = [Institution(**from_document(doc)) for doc in result.items]
        return result

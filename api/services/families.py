# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Family registry and family/institution associations.

The ``institution_families`` collection holds at most one row per family,
backed by a unique index on ``familyId``.
"""

import re
import logging
from typing import Any, Dict, List, Optional
from bson import ObjectId
from opentelemetry import trace
from pymongo import ASCENDING

from models.base import utcnow
from models.entities import Family, InstitutionFamily, UserContext, DEFAULT_REVOCATION_REASON
from models.requests import CreateFamilyRequest, UpdateFamilyRequest
from models.responses import FamilyResponse
from domain.associations import validate_association, can_manage_link, classify_cpf_search
from domain.documents import only_digits, validate_cpf
from domain.eligibility import is_block_active
from middleware.auth import require_institution_scope
from middleware.error_handler import (
    AuthorizationException,
    ConflictException,
    FamilyAlreadyAssociatedException,
    NotFoundException,
    ValidationException
)
from .audit import AuditService
from .mongodb import MongoDBService, PaginationResult, DuplicateDocumentError, to_document, from_document, to_object_ids

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

FAMILIES = "families"
LINKS = "institution_families"
INSTITUTIONS = "institutions"

DUPLICATE_CPF_MESSAGE = "Já existe uma família cadastrada com este CPF"


def present_family(family: Family, link: Optional[InstitutionFamily] = None) -> Dict[str, Any]:
    """Family as returned by the API, with the block evaluated against now."""
    data = family.model_dump()
    data["block_active"] = is_block_active(family)
    data["has_valid_consent"] = family.has_valid_consent()
    data["institution_id"] = link.institution_id if link else None
    return FamilyResponse(**data).to_dict()


class FamilyService:
    """CRUD, CPF search, associations and LGPD consent for families."""

    def __init__(self, mongo_service: MongoDBService, audit_service: AuditService):
        self.mongo_service = mongo_service
        self.audit_service = audit_service

    # Lookups

    def get_family(self, family_id: str) -> Family:
        document = self.mongo_service.find_by_id(FAMILIES, family_id)
        if not document:
            raise NotFoundException(f"Family {family_id} not found")
        return Family(**from_document(document))

    def get_link(self, family_id: str) -> Optional[InstitutionFamily]:
        document = self.mongo_service.find_one(LINKS, {"familyId": family_id})
        if not document:
            return None
        return InstitutionFamily(**from_document(document))

    def institution_name(self, institution_id: Optional[str]) -> Optional[str]:
        if not institution_id:
            return None
        document = self.mongo_service.find_by_id(INSTITUTIONS, institution_id)
        return document.get("name") if document else None

    def links_for(self, family_ids: List[str]) -> Dict[str, InstitutionFamily]:
        """Association rows keyed by family id."""
        if not family_ids:
            return {}
        documents = self.mongo_service.find(LINKS, {"familyId": {"$in": list(family_ids)}})
        links = [InstitutionFamily(**from_document(doc)) for doc in documents]
        return {link.family_id: link for link in links}

    def family_ids_for_institution(self, institution_id: str) -> List[str]:
        documents = self.mongo_service.find(
            LINKS, {"institutionId": institution_id}, projection={"familyId": 1}
        )
        return [doc["familyId"] for doc in documents]

    def get_visible_family(self, family_id: str, user_context: UserContext):
        """
        Family and its link, if the caller may see it.

        Institution users see unlinked families and their own; families
        served by another institution are reachable only through CPF search.
        """
        family = self.get_family(family_id)
        link = self.get_link(family_id)
        if link and not user_context.can_act_for(link.institution_id):
            raise AuthorizationException("Family is served by another institution")
        return family, link

    def _ensure_cpf_free(self, cpf: Optional[str], exclude_id: Optional[str] = None) -> None:
        if not cpf:
            return
        query = {"cpf": cpf}
        if exclude_id:
            query["_id"] = {"$ne": ObjectId(exclude_id)}
        if self.mongo_service.find_one(FAMILIES, query):
            raise ConflictException(DUPLICATE_CPF_MESSAGE)

    # CRUD

    def create_family(self, request: CreateFamilyRequest, user_context: UserContext) -> Family:
        """
        Register a family, optionally linking it to an institution.

        Institution users always link the new family to their own institution.
        """
        with tracer.start_as_current_span("families.create") as span:
            institution_id = None
            if request.institution_id or not user_context.is_admin:
                institution_id = require_institution_scope(user_context, request.institution_id)
                if not self.mongo_service.find_by_id(INSTITUTIONS, institution_id):
                    raise NotFoundException(f"Institution {institution_id} not found")

            family = Family(
                name=request.name,
                contact_person=request.contact_person,
                cpf=request.cpf,
                phone=request.phone,
                address=request.address,
                members_count=request.members_count,
                consent_given_at=utcnow() if request.consent_given else None,
                created_by=user_context.user_id,
                updated_by=user_context.user_id
            )
            self._ensure_cpf_free(family.cpf)

            try:
                self.mongo_service.create(
                    FAMILIES, to_document(family.model_dump()), user_context.user_id, doc_id=family.id
                )
            except DuplicateDocumentError:
                raise ConflictException(DUPLICATE_CPF_MESSAGE)

            span.set_attributes({"family.id": family.id, "institution.id": institution_id or ""})
            self.audit_service.log_action(
                user_context, "family", family.id, "create", after=family.model_dump(mode="json")
            )
            logger.info(
                "Family registered",
                extra={"family_id": family.id, "institution_id": institution_id, "user_id": user_context.user_id}
            )

            if institution_id:
                self.link(family.id, institution_id, user_context)

            return family

    def update_family(self, family_id: str, request: UpdateFamilyRequest, user_context: UserContext) -> Family:
        with tracer.start_as_current_span("families.update") as span:
            span.set_attribute("family.id", family_id)
            family, link = self.get_visible_family(family_id, user_context)

            changes = request.model_dump(exclude_unset=True)
            if "cpf" in changes:
                if changes["cpf"]:
                    digits = only_digits(changes["cpf"])
                    if not validate_cpf(digits):
                        raise ValidationException("Invalid CPF", [{"field": "cpf", "message": "Invalid CPF"}])
                    changes["cpf"] = digits
                else:
                    changes["cpf"] = None
                self._ensure_cpf_free(changes["cpf"], exclude_id=family_id)

            if not changes:
                return family

            before = family.model_dump(mode="json")
            updated = family.model_copy(update=changes)
            try:
                self.mongo_service.update_by_id(FAMILIES, family_id, to_document(changes), user_context.user_id)
            except DuplicateDocumentError:
                raise ConflictException(DUPLICATE_CPF_MESSAGE)

            self.audit_service.log_action(
                user_context, "family", family_id, "update",
                before=before, after=updated.model_dump(mode="json")
            )
            return self.get_family(family_id)

    def delete_family(self, family_id: str, user_context: UserContext) -> None:
        """Soft delete a family and drop its association."""
        with tracer.start_as_current_span("families.delete") as span:
            span.set_attribute("family.id", family_id)
            family = self.get_family(family_id)

            self.mongo_service.soft_delete_by_id(FAMILIES, family_id, user_context.user_id)
            self.mongo_service.delete_many(LINKS, {"familyId": family_id})

            self.audit_service.log_action(
                user_context, "family", family_id, "delete", before=family.model_dump(mode="json")
            )

    def list_families(
        self,
        user_context: UserContext,
        page: int = 1,
        page_size: int = 20,
        search: Optional[str] = None,
        institution_id: Optional[str] = None
    ) -> PaginationResult:
        """
        Paginated families. Institution users only see the families linked
        to their institution; admins may filter by institution.
        """
        with tracer.start_as_current_span("families.list") as span:
            filters: Dict[str, Any] = {}

            if institution_id or not user_context.is_admin:
                scope = require_institution_scope(user_context, institution_id)
                filters["_id"] = {"$in": to_object_ids(self.family_ids_for_institution(scope))}
                span.set_attribute("institution.id", scope)

            if search:
                pattern = {"$regex": re.escape(search.strip()), "$options": "i"}
                digits = only_digits(search)
                clauses = [{"name": pattern}, {"contactPerson": pattern}]
                if digits:
                    clauses.append({"cpf": {"$regex": f"^{digits}"}})
                filters["$or"] = clauses

            result = self.mongo_service.paginate(
                FAMILIES, page=page, page_size=page_size, filters=filters,
                sort_by="name", sort_order=ASCENDING
            )
            families = [Family(**from_document(doc)) for doc in result.items]
            links = self.links_for([f.id for f in families])
            result.items = [present_family(f, links.get(f.id)) for f in families]

            span.set_attribute("families.count", len(result.items))
            return result

    # Associations

    def link(self, family_id: str, institution_id: Optional[str], user_context: UserContext) -> InstitutionFamily:
        """
        Associate a family with an institution.

        Linking to the institution that already serves the family is a no-op.

        Raises:
            FamilyAlreadyAssociatedException: Another institution serves the family
        """
        with tracer.start_as_current_span("families.link") as span:
            institution_id = require_institution_scope(user_context, institution_id)
            span.set_attributes({"family.id": family_id, "institution.id": institution_id})

            self.get_family(family_id)
            if not self.mongo_service.find_by_id(INSTITUTIONS, institution_id):
                raise NotFoundException(f"Institution {institution_id} not found")

            existing = self.get_link(family_id)
            decision = validate_association(
                existing, institution_id,
                self.institution_name(existing.institution_id) if existing else None
            )
            if not decision.allowed:
                span.set_attribute("families.link_result", "conflict")
                logger.warning(
                    "Family already associated with another institution",
                    extra={
                        "family_id": family_id,
                        "institution_id": institution_id,
                        "existing_institution_id": existing.institution_id
                    }
                )
                raise FamilyAlreadyAssociatedException(decision.error_message)

            if not decision.insert:
                span.set_attribute("families.link_result", "unchanged")
                return existing

            link = InstitutionFamily(
                institution_id=institution_id, family_id=family_id, created_by=user_context.user_id
            )
            try:
                self.mongo_service.create(LINKS, to_document(link.model_dump()), user_context.user_id, doc_id=link.id)
            except DuplicateDocumentError:
                # Lost a race with a concurrent link
                winner = self.get_link(family_id)
                if winner and winner.institution_id == institution_id:
                    return winner
                decision = validate_association(
                    winner, institution_id, self.institution_name(winner.institution_id) if winner else None
                )
                raise FamilyAlreadyAssociatedException(
                    decision.error_message or "FAMILY_ALREADY_ASSOCIATED: family is already served by another institution"
                )

            span.set_attribute("families.link_result", "created")
            self.audit_service.log_action(
                user_context, "institution_family", link.id, "link", after=link.model_dump(mode="json")
            )
            logger.info(
                "Family linked to institution",
                extra={"family_id": family_id, "institution_id": institution_id, "user_id": user_context.user_id}
            )
            return link

    def unlink(self, family_id: str, institution_id: Optional[str], user_context: UserContext) -> bool:
        """Remove the association. Returns False when there was none to remove."""
        with tracer.start_as_current_span("families.unlink") as span:
            existing = self.get_link(family_id)
            if existing is None:
                return False

            institution_id = institution_id or existing.institution_id
            span.set_attributes({"family.id": family_id, "institution.id": institution_id})

            if not can_manage_link(user_context, institution_id):
                raise AuthorizationException("Cannot remove another institution's association")
            if existing.institution_id != institution_id:
                raise NotFoundException(f"Family {family_id} is not linked to institution {institution_id}")

            deleted = self.mongo_service.delete_many(
                LINKS, {"familyId": family_id, "institutionId": institution_id}
            )
            if deleted:
                self.audit_service.log_action(
                    user_context, "institution_family", existing.id, "unlink",
                    before=existing.model_dump(mode="json")
                )
            return bool(deleted)

    def search_by_cpf(self, cpf: str, user_context: UserContext) -> Dict[str, Any]:
        """
        Look a family up by CPF from the caller's point of view.

        Returns the scenario plus, where applicable, the family and the
        institution currently serving it.
        """
        with tracer.start_as_current_span("families.search_by_cpf") as span:
            digits = only_digits(cpf)
            if not validate_cpf(digits):
                raise ValidationException("Invalid CPF", [{"field": "cpf", "message": "Invalid CPF"}])

            document = self.mongo_service.find_one(FAMILIES, {"cpf": digits})
            family = Family(**from_document(document)) if document else None
            link = self.get_link(family.id) if family else None

            scenario = classify_cpf_search(link, family is not None, user_context.institution_id)
            span.set_attribute("families.search_scenario", scenario.value)

            return {
                "scenario": scenario.value,
                "family": present_family(family, link) if family else None,
                "institution_id": link.institution_id if link else None,
                "institution_name": self.institution_name(link.institution_id) if link else None
            }

    # LGPD consent

    def give_consent(
        self,
        family_id: str,
        user_context: UserContext,
        term_id: Optional[str] = None,
        signed: bool = False
    ) -> Family:
        """Record digital consent, or a signed printed term. Clears a previous revocation."""
        with tracer.start_as_current_span("families.give_consent") as span:
            span.set_attribute("family.id", family_id)
            family, _ = self.get_visible_family(family_id, user_context)

            changes = {
                "consentGivenAt": utcnow(),
                "consentRevokedAt": None,
                "consentRevocationReason": None
            }
            if term_id:
                changes["consentTermId"] = term_id
            if signed:
                changes["consentTermSigned"] = True

            self.mongo_service.update_by_id(FAMILIES, family_id, changes, user_context.user_id)
            updated = self.get_family(family_id)

            self.audit_service.log_action(
                user_context, "family", family_id, "consent_give",
                before={"consent_given_at": family.consent_given_at, "consent_revoked_at": family.consent_revoked_at},
                after={"consent_given_at": updated.consent_given_at, "consent_term_id": updated.consent_term_id,
                       "consent_term_signed": updated.consent_term_signed}
            )
            return updated

    def revoke_consent(self, family_id: str, user_context: UserContext, reason: Optional[str] = None) -> Family:
        with tracer.start_as_current_span("families.revoke_consent") as span:
            span.set_attribute("family.id", family_id)
            self.get_visible_family(family_id, user_context)

            reason = (reason or "").strip() or DEFAULT_REVOCATION_REASON
            self.mongo_service.update_by_id(
                FAMILIES, family_id,
                {"consentRevokedAt": utcnow(), "consentRevocationReason": reason},
                user_context.user_id
            )
            updated = self.get_family(family_id)

            self.audit_service.log_action(
                user_context, "family", family_id, "consent_revoke",
                after={"consent_revoked_at": updated.consent_revoked_at, "consent_revocation_reason": reason}
            )
            return updated

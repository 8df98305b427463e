# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Unit tests for the family registry, associations and consent.
"""

import pytest
from bson import ObjectId

from models.entities import InstitutionFamily
from models.requests import CreateFamilyRequest, UpdateFamilyRequest
from services.families import FamilyService, FAMILIES, LINKS, INSTITUTIONS, DUPLICATE_CPF_MESSAGE
from services.mongodb import DuplicateDocumentError, to_document
from middleware.error_handler import (
    AuthorizationException,
    ConflictException,
    FamilyAlreadyAssociatedException,
    NotFoundException,
    ValidationException
)


def link_document(link: InstitutionFamily) -> dict:
    document = to_document(link.model_dump())
    document["id"] = link.id
    return document


@pytest.fixture
def store():
    """Documents by collection, served through the mocked lookups."""
    return {FAMILIES: {}, INSTITUTIONS: {}, LINKS: None}


@pytest.fixture
def family_service(mock_mongo, mock_audit, store):
    mock_mongo.find_by_id.side_effect = lambda collection, doc_id, include_deleted=False: (
        (store.get(collection) or {}).get(doc_id)
    )

    def find_one(collection, filters, include_deleted=False):
        if collection == LINKS:
            return store[LINKS]
        if collection == FAMILIES and "cpf" in filters and "_id" not in filters:
            matches = [d for d in store[FAMILIES].values() if d.get("cpf") == filters["cpf"]]
            return matches[0] if matches else None
        return None

    def create(collection, document, user_id, doc_id=None):
        doc_id = doc_id or str(ObjectId())
        if collection == LINKS:
            store[LINKS] = {**document, "id": doc_id}
        else:
            store.setdefault(collection, {})[doc_id] = {**document, "id": doc_id}
        return doc_id

    mock_mongo.find_one.side_effect = find_one
    mock_mongo.create.side_effect = create
    return FamilyService(mock_mongo, mock_audit)


@pytest.fixture
def registered(as_document, store, sample_family, sample_institution):
    store[FAMILIES][sample_family.id] = as_document(sample_family)
    store[INSTITUTIONS][sample_institution.id] = as_document(sample_institution)
    return sample_family


class TestFamilyRegistration:

    def test_institution_user_registration_links_family(
        self, as_document, valid_cpf, family_service, mock_mongo, store, sample_institution, institution_context
    ):
        store[INSTITUTIONS][sample_institution.id] = as_document(sample_institution)
        request = CreateFamilyRequest(
            name="Família Costa", contact_person="Rita Costa", cpf="529.982.247-25", consent_given=True
        )

        family = family_service.create_family(request, institution_context)

        assert family.cpf == valid_cpf
        assert family.consent_given_at is not None
        collections = [call.args[0] for call in mock_mongo.create.call_args_list]
        assert collections == [FAMILIES, LINKS]
        link_doc = mock_mongo.create.call_args_list[1].args[1]
        assert link_doc["institutionId"] == sample_institution.id
        assert link_doc["familyId"] == family.id

    def test_admin_registration_without_institution(self, family_service, mock_mongo, admin_context):
        request = CreateFamilyRequest(name="Família Costa", contact_person="Rita Costa")

        family = family_service.create_family(request, admin_context)

        assert family.cpf is None
        assert mock_mongo.create.call_count == 1

    def test_duplicate_cpf_rejected(self, valid_cpf, family_service, registered, admin_context):
        request = CreateFamilyRequest(name="Outra", contact_person="Pessoa", cpf=valid_cpf)

        with pytest.raises(ConflictException, match=DUPLICATE_CPF_MESSAGE):
            family_service.create_family(request, admin_context)

    def test_duplicate_index_violation_maps_to_conflict(self, other_valid_cpf, family_service, mock_mongo, admin_context):
        mock_mongo.create.side_effect = DuplicateDocumentError("dup")
        request = CreateFamilyRequest(name="Outra", contact_person="Pessoa", cpf=other_valid_cpf)

        with pytest.raises(ConflictException):
            family_service.create_family(request, admin_context)

    def test_unknown_institution(self, family_service, institution_context):
        request = CreateFamilyRequest(name="Família Costa", contact_person="Rita Costa")

        with pytest.raises(NotFoundException):
            family_service.create_family(request, institution_context)

    def test_update_rejects_invalid_cpf(self, family_service, registered, admin_context):
        with pytest.raises(ValidationException):
            family_service.update_family(
                registered.id, UpdateFamilyRequest.model_construct(cpf="123.456.789-00"), admin_context
            )

    def test_update_writes_camel_case_changes(self, family_service, mock_mongo, registered, admin_context):
        family_service.update_family(registered.id, UpdateFamilyRequest(members_count=6), admin_context)

        collection, family_id, changes, user_id = mock_mongo.update_by_id.call_args.args
        assert collection == FAMILIES
        assert changes == {"membersCount": 6}
        assert user_id == admin_context.user_id

    def test_delete_drops_association(self, family_service, mock_mongo, registered, admin_context):
        family_service.delete_family(registered.id, admin_context)

        mock_mongo.soft_delete_by_id.assert_called_once_with(FAMILIES, registered.id, admin_context.user_id)
        mock_mongo.delete_many.assert_called_once_with(LINKS, {"familyId": registered.id})


class TestFamilyAssociations:

    def test_link_unassociated_family(self, family_service, mock_mongo, mock_audit, registered, institution_context):
        link = family_service.link(registered.id, None, institution_context)

        assert link.institution_id == institution_context.institution_id
        mock_mongo.create.assert_called_once()
        assert mock_audit.log_action.call_args.args[3] == "link"

    def test_link_same_institution_is_idempotent(
        self, family_service, mock_mongo, store, registered, institution_context
    ):
        existing = InstitutionFamily(institution_id=institution_context.institution_id, family_id=registered.id)
        store[LINKS] = link_document(existing)

        link = family_service.link(registered.id, None, institution_context)

        assert link.id == existing.id
        mock_mongo.create.assert_not_called()

    def test_link_other_institution_conflicts(
        self, family_service, mock_mongo, store, registered, other_institution_id, institution_context
    ):
        store[INSTITUTIONS][other_institution_id] = {"id": other_institution_id, "name": "Casa do Pão"}
        store[LINKS] = link_document(
            InstitutionFamily(institution_id=other_institution_id, family_id=registered.id)
        )

        with pytest.raises(FamilyAlreadyAssociatedException) as exc_info:
            family_service.link(registered.id, None, institution_context)

        assert exc_info.value.code == "FAMILY_ALREADY_ASSOCIATED"
        assert exc_info.value.status_code == 409
        assert "Casa do Pão" in exc_info.value.message
        mock_mongo.create.assert_not_called()

    def test_concurrent_link_loses_to_other_institution(
        self, family_service, mock_mongo, store, registered, other_institution_id, institution_context
    ):
        winner = InstitutionFamily(institution_id=other_institution_id, family_id=registered.id)

        def lose_race(*args, **kwargs):
            store[LINKS] = link_document(winner)
            raise DuplicateDocumentError("dup")

        mock_mongo.create.side_effect = lose_race

        with pytest.raises(FamilyAlreadyAssociatedException):
            family_service.link(registered.id, None, institution_context)

    def test_institution_user_cannot_link_for_other_institution(
        self, family_service, registered, other_institution_id, institution_context
    ):
        with pytest.raises(AuthorizationException):
            family_service.link(registered.id, other_institution_id, institution_context)

    def test_unlink_without_association(self, family_service, registered, institution_context):
        assert family_service.unlink(registered.id, None, institution_context) is False

    def test_unlink_other_institution_denied(
        self, family_service, store, registered, other_institution_id, institution_context
    ):
        store[LINKS] = link_document(
            InstitutionFamily(institution_id=other_institution_id, family_id=registered.id)
        )

        with pytest.raises(AuthorizationException):
            family_service.unlink(registered.id, None, institution_context)

    def test_unlink_own_association(self, family_service, mock_mongo, store, registered, institution_context):
        store[LINKS] = link_document(
            InstitutionFamily(institution_id=institution_context.institution_id, family_id=registered.id)
        )

        assert family_service.unlink(registered.id, None, institution_context) is True
        mock_mongo.delete_many.assert_called_once_with(
            LINKS, {"familyId": registered.id, "institutionId": institution_context.institution_id}
        )


class TestCpfSearch:

    def test_invalid_cpf(self, family_service, institution_context):
        with pytest.raises(ValidationException):
            family_service.search_by_cpf("111.111.111-11", institution_context)

    def test_not_found(self, other_valid_cpf, family_service, institution_context):
        result = family_service.search_by_cpf(other_valid_cpf, institution_context)

        assert result == {
            "scenario": "not_found",
            "family": None,
            "institution_id": None,
            "institution_name": None
        }

    def test_found_unlinked(self, family_service, registered, institution_context):
        result = family_service.search_by_cpf("529.982.247-25", institution_context)

        assert result["scenario"] == "found_unlinked"
        assert result["family"]["id"] == registered.id

    def test_linked_to_other_institution(
        self, valid_cpf, family_service, store, registered, other_institution_id, institution_context
    ):
        store[INSTITUTIONS][other_institution_id] = {"id": other_institution_id, "name": "Casa do Pão"}
        store[LINKS] = link_document(
            InstitutionFamily(institution_id=other_institution_id, family_id=registered.id)
        )

        result = family_service.search_by_cpf(valid_cpf, institution_context)

        assert result["scenario"] == "linked_other_institution"
        assert result["institution_id"] == other_institution_id
        assert result["institution_name"] == "Casa do Pão"


class TestFamilyVisibility:

    def test_other_institution_family_hidden(
        self, family_service, store, registered, other_institution_id, institution_context
    ):
        store[LINKS] = link_document(
            InstitutionFamily(institution_id=other_institution_id, family_id=registered.id)
        )

        with pytest.raises(AuthorizationException):
            family_service.get_visible_family(registered.id, institution_context)

    def test_admin_sees_everything(self, family_service, store, registered, other_institution_id, admin_context):
        store[LINKS] = link_document(
            InstitutionFamily(institution_id=other_institution_id, family_id=registered.id)
        )

        family, link = family_service.get_visible_family(registered.id, admin_context)

        assert family.id == registered.id
        assert link.institution_id == other_institution_id

    def test_missing_family(self, family_service, admin_context):
        with pytest.raises(NotFoundException):
            family_service.get_family(str(ObjectId()))


class TestConsent:

    def test_give_consent_clears_revocation(self, family_service, mock_mongo, registered, admin_context):
        family_service.give_consent(registered.id, admin_context, term_id="TERMO-1", signed=True)

        changes = mock_mongo.update_by_id.call_args.args[2]
        assert changes["consentRevokedAt"] is None
        assert changes["consentRevocationReason"] is None
        assert changes["consentTermId"] == "TERMO-1"
        assert changes["consentTermSigned"] is True

    def test_revoke_uses_default_reason(self, family_service, mock_mongo, mock_audit, registered, admin_context):
        family_service.revoke_consent(registered.id, admin_context, reason="   ")

        changes = mock_mongo.update_by_id.call_args.args[2]
        assert changes["consentRevocationReason"] == "Revogação solicitada pelo titular"
        assert mock_audit.log_action.call_args.args[3] == "consent_revoke"

    def test_consent_validity(self, sample_family):
        assert sample_family.has_valid_consent() is False

        signed = sample_family.model_copy(update={"consent_term_signed": True})
        assert signed.has_valid_consent() is True

# SPDX-License-Identifier: Apache-2.0

"""
Family/institution association rules: a family is served by at most one
institution at a time.
"""

from dataclasses import dataclass
from typing import Optional

from models.entities import InstitutionFamily, UserContext
from models.enums import FamilySearchScenario

ALREADY_ASSOCIATED_TAG = "FAMILY_ALREADY_ASSOCIATED"


@dataclass
class AssociationDecision:
    """What a link request should do."""
    allowed: bool
    insert: bool = False
    error_message: Optional[str] = None


def validate_association(
    existing: Optional[InstitutionFamily],
    institution_id: str,
    existing_institution_name: Optional[str] = None
) -> AssociationDecision:
    """
    Check a link request against the family's current association.

    No link: insert. Same institution: nothing to do. Other institution:
    rejected with a tagged message naming the institution.
    """
    if existing is None:
        return AssociationDecision(allowed=True, insert=True)

    if existing.institution_id == institution_id:
        return AssociationDecision(allowed=True, insert=False)

    name = existing_institution_name or "another institution"
    return AssociationDecision(
        allowed=False,
        error_message=f"{ALREADY_ASSOCIATED_TAG}: family is already served by {name}"
    )


def can_manage_link(user_context: UserContext, institution_id: str) -> bool:
    """Institution users may only create or remove their own institution's links."""
    return user_context.can_act_for(institution_id)


def classify_cpf_search(
    existing: Optional[InstitutionFamily],
    family_found: bool,
    institution_id: Optional[str]
) -> FamilySearchScenario:
    """Map a CPF lookup to one of the four search scenarios."""
    if not family_found:
        return FamilySearchScenario.NOT_FOUND
    if existing is None:
        return FamilySearchScenario.FOUND_UNLINKED
    if institution_id and existing.institution_id == institution_id:
        return FamilySearchScenario.LINKED_SAME_INSTITUTION
    return FamilySearchScenario.LINKED_OTHER_INSTITUTION

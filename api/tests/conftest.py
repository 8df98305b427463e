# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Pytest configuration and fixtures.
"""

import os
import pytest
from datetime import timedelta
from unittest.mock import MagicMock, patch
from bson import ObjectId

# Set test environment before the application module is imported
os.environ['ENVIRONMENT'] = 'test'
os.environ['OTEL_ENABLED'] = 'false'
os.environ['MONGODB_DATABASE'] = 'cesta_basica_test'
os.environ['REDIS_URL'] = ''
os.environ['DOCS_ENABLED'] = 'false'

from models.base import utcnow
from models.entities import Family, Delivery, Product, Supplier, Institution, User, UserContext
from models.enums import UserRole
from domain.authorization import permissions_for_role
from services.mongodb import PaginationResult, to_document

VALID_CPF = "52998224725"
OTHER_VALID_CPF = "11144477735"
VALID_CNPJ = "11222333000181"


@pytest.fixture
def valid_cpf():
    return VALID_CPF


@pytest.fixture
def other_valid_cpf():
    return OTHER_VALID_CPF


@pytest.fixture
def valid_cnpj():
    return VALID_CNPJ


@pytest.fixture
def as_document():
    """Turns an entity into what ``MongoDBService`` returns: camelCase keys plus ``id``."""
    def convert(entity) -> dict:
        document = to_document(entity.model_dump())
        document["id"] = entity.id
        return document
    return convert


@pytest.fixture
def institution_id():
    return str(ObjectId())


@pytest.fixture
def other_institution_id():
    return str(ObjectId())


@pytest.fixture
def admin_context():
    """Administrator acting across institutions."""
    return UserContext(
        user_id=str(ObjectId()),
        role=UserRole.ADMIN,
        email="admin@prefeitura.gov.br",
        name="Admin",
        permissions=permissions_for_role(UserRole.ADMIN.value)
    )


@pytest.fixture
def institution_context(institution_id):
    """Institution user bound to ``institution_id``."""
    return UserContext(
        user_id=str(ObjectId()),
        role=UserRole.INSTITUTION,
        institution_id=institution_id,
        email="contato@instituicao.org",
        name="Instituição Esperança",
        permissions=permissions_for_role(UserRole.INSTITUTION.value)
    )


@pytest.fixture
def mock_mongo():
    """MongoDBService stand-in with permissive defaults."""
    mongo = MagicMock()
    mongo.create.side_effect = lambda collection, document, user_id, doc_id=None: doc_id or str(ObjectId())
    mongo.find.return_value = []
    mongo.find_one.return_value = None
    mongo.find_by_id.return_value = None
    mongo.update_by_id.return_value = True
    mongo.update_one.return_value = {"id": str(ObjectId())}
    mongo.soft_delete_by_id.return_value = True
    mongo.hard_delete_by_id.return_value = True
    mongo.delete_many.return_value = 1
    mongo.count.return_value = 0
    mongo.paginate.return_value = PaginationResult([], 0, 1, 20)
    return mongo


@pytest.fixture
def mock_audit():
    audit = MagicMock()
    audit.log_action.return_value = str(ObjectId())
    return audit


@pytest.fixture
def sample_family():
    """Unblocked family with a valid CPF."""
    return Family(
        id=str(ObjectId()),
        name="Família Silva",
        contact_person="Maria Silva",
        cpf=VALID_CPF,
        phone="(11) 99999-0000",
        address="Rua das Flores, 10",
        members_count=4,
        created_by=str(ObjectId()),
        updated_by=str(ObjectId())
    )


@pytest.fixture
def blocked_family(other_institution_id):
    """Family blocked for another 20 days by ``other_institution_id``."""
    return Family(
        id=str(ObjectId()),
        name="Família Souza",
        contact_person="João Souza",
        cpf=OTHER_VALID_CPF,
        members_count=3,
        is_blocked=True,
        blocked_until=utcnow() + timedelta(days=20),
        blocked_by_institution_id=other_institution_id,
        block_reason="Cesta básica entregue - bloqueio de 30 dias",
        created_by=str(ObjectId()),
        updated_by=str(ObjectId())
    )


@pytest.fixture
def sample_institution(institution_id):
    return Institution(
        id=institution_id,
        name="Instituição Esperança",
        address="Av. Central, 100",
        phone="(11) 3333-0000",
        email="contato@instituicao.org",
        responsible_name="Ana Lima",
        created_by=str(ObjectId()),
        updated_by=str(ObjectId())
    )


@pytest.fixture
def sample_product():
    return Product(
        id=str(ObjectId()),
        name="Arroz 5kg",
        unit="pacote",
        created_by=str(ObjectId()),
        updated_by=str(ObjectId())
    )


@pytest.fixture
def sample_supplier():
    return Supplier(
        id=str(ObjectId()),
        name="Atacadão Central",
        document_type="PJ",
        document_number=VALID_CNPJ,
        created_by=str(ObjectId()),
        updated_by=str(ObjectId())
    )


@pytest.fixture
def sample_delivery(sample_family, institution_id):
    return Delivery(
        id=str(ObjectId()),
        family_id=sample_family.id,
        institution_id=institution_id,
        blocking_period_days=30,
        notes="Entrega mensal",
        created_by=str(ObjectId()),
        updated_by=str(ObjectId())
    )


@pytest.fixture
def sample_user(institution_id):
    return User(
        id=str(ObjectId()),
        email="contato@instituicao.org",
        name="Ana Lima",
        password_hash="$2b$12$placeholder",
        role=UserRole.INSTITUTION,
        institution_id=institution_id,
        created_by=str(ObjectId()),
        updated_by=str(ObjectId())
    )


# Application fixtures

@pytest.fixture
def flask_app():
    from app import app
    app.config['TESTING'] = True
    return app


@pytest.fixture
def client(flask_app):
    """Create test client."""
    with flask_app.test_client() as client:
        yield client


@pytest.fixture
def mock_services(flask_app):
    """
    Replace every service hanging off the application with a mock.

    The real ``auth_service`` stays so tokens minted in tests validate.
    """
    names = [
        'mongodb_service', 'redis_service', 'audit_service', 'family_service',
        'receipt_service', 'inventory_ledger', 'delivery_service', 'catalog_service',
        'institution_service', 'report_service', 'health_service'
    ]
    mocks = {name: MagicMock() for name in names}
    mocks['redis_service'].is_token_blocked.return_value = False
    mocks['redis_service'].block_token.return_value = True
    mocks['mongodb_service'].find_by_id.return_value = None
    mocks['family_service'].institution_name.return_value = "Instituição Esperança"

    patchers = [patch.object(flask_app, name, mock) for name, mock in mocks.items()]
    patchers.append(patch.object(flask_app.auth_middleware, 'redis_service', mocks['redis_service']))
    for patcher in patchers:
        patcher.start()
    try:
        yield mocks
    finally:
        for patcher in reversed(patchers):
            patcher.stop()


def _token_headers(flask_app, user: User) -> dict:
    tokens = flask_app.auth_service.generate_tokens(user)
    return {
        'Authorization': f"Bearer {tokens['access_token']}",
        'Content-Type': 'application/json'
    }


@pytest.fixture
def admin_user():
    return User(
        id=str(ObjectId()),
        email="admin@prefeitura.gov.br",
        name="Admin",
        password_hash="$2b$12$placeholder",
        role=UserRole.ADMIN,
        created_by="system",
        updated_by="system"
    )


@pytest.fixture
def admin_headers(flask_app, admin_user):
    return _token_headers(flask_app, admin_user)


@pytest.fixture
def institution_headers(flask_app, sample_user):
    return _token_headers(flask_app, sample_user)

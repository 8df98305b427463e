#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Provision a municipal administrator account.

Institution accounts are created through the API, but the first
administrator has to exist before anyone can call it.

Usage:
    ADMIN_EMAIL=... ADMIN_PASSWORD=... [ADMIN_NAME=...] python scripts/create_admin.py
"""

import sys
import os
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pydantic import ValidationError

from models.entities import User
from models.enums import UserRole
from services.auth import AuthService
from services.mongodb import get_mongodb_service, close_mongodb_connection, to_document, DuplicateDocumentError

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)

SYSTEM_USER = "system"
MIN_PASSWORD_LENGTH = 8


def main() -> int:
    email = os.getenv('ADMIN_EMAIL', '').strip()
    password = os.getenv('ADMIN_PASSWORD', '')
    name = os.getenv('ADMIN_NAME', 'Administrador')

    if not email or len(password) < MIN_PASSWORD_LENGTH:
        logger.error(f"ADMIN_EMAIL and an ADMIN_PASSWORD of at least {MIN_PASSWORD_LENGTH} characters are required")
        return 1

    try:
        user = User(
            email=email,
            name=name,
            password_hash=AuthService().hash_password(password),
            role=UserRole.ADMIN,
            created_by=SYSTEM_USER,
            updated_by=SYSTEM_USER
        )
    except ValidationError as e:
        logger.error(f"Invalid administrator data: {e}")
        return 1

    mongodb_service = get_mongodb_service()
    try:
        if mongodb_service.find_one("users", {"email": user.email}):
            logger.warning(f"User {user.email} already exists, nothing to do")
            return 0
        mongodb_service.create("users", to_document(user.model_dump()), SYSTEM_USER, doc_id=user.id)
        logger.info(f"Administrator {user.email} created with id {user.id}")
        return 0
    except DuplicateDocumentError:
        logger.warning(f"User {user.email} already exists, nothing to do")
        return 0
    finally:
        close_mongodb_connection()


if __name__ == "__main__":
    sys.exit(main())

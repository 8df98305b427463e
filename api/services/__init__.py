# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Services package - persistence, integrations and the operations behind each route.
"""

from .mongodb import MongoDBService, PaginationResult, get_mongodb_service, close_mongodb_connection

__all__ = [
    "MongoDBService",
    "PaginationResult",
    "get_mongodb_service",
    "close_mongodb_connection"
]

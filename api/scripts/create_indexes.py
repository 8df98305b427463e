#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Create the MongoDB indexes the cesta básica API relies on.

The unique index on ``institution_families.familyId`` enforces one
institution per family, so run this before the API takes traffic.
"""

import sys
import os
import logging

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.mongodb import get_mongodb_service, close_mongodb_connection

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)

logger = logging.getLogger(__name__)


def main() -> int:
    mongodb_service = get_mongodb_service()
    try:
        health = mongodb_service.health_check()
        if health['status'] != 'healthy':
            logger.error(f"MongoDB unavailable: {health.get('error')}")
            return 1

        logger.info(f"Creating indexes on {health['database']} (MongoDB {health.get('version')})")
        mongodb_service.create_indexes()

        for name in sorted(mongodb_service.database.list_collection_names()):
            indexes = sorted(mongodb_service.get_collection(name).index_information())
            logger.info(f"{name}: {', '.join(indexes)}")
        return 0
    except Exception as e:
        logger.error(f"Index creation failed: {e}")
        return 1
    finally:
        close_mongodb_connection()


if __name__ == "__main__":
    sys.exit(main())

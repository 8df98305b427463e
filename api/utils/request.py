# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Query string and JSON body parsing shared by the route modules.
"""

import re
from datetime import date, datetime
from typing import Any, Dict, Optional, Type, TypeVar

from flask import request
from pydantic import BaseModel

from middleware.error_handler import ValidationException
from models.base import local_day_bounds, to_naive_utc

ModelT = TypeVar("ModelT", bound=BaseModel)

TRUTHY = frozenset({'true', '1', 'yes', 'on'})
DATE_ONLY = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2}")


def _int_arg(name: str, default: int) -> int:
    """Integer query parameter. Garbage falls back to ``default``."""
    try:
        return int(request.args.get(name, default))
    except (ValueError, TypeError):
        return default


class RequestParser:
    """Helpers that read the current Flask request."""

    @staticmethod
    def get_pagination_params(
        default_page: int = 1,
        default_page_size: int = 20,
        max_page_size: int = 100
    ) -> Dict[str, int]:
        """``page`` (at least 1) and ``page_size`` (clamped to 1..``max_page_size``)."""
        return {
            'page': max(1, _int_arg('page', default_page)),
            'page_size': min(max(1, _int_arg('page_size', default_page_size)), max_page_size)
        }

    @staticmethod
    def get_search() -> Optional[str]:
        return request.args.get('search', '').strip() or None

    @staticmethod
    def get_bool_param(name: str, default: bool = False) -> bool:
        value = request.args.get(name)
        return default if value is None else value.lower() in TRUTHY

    @staticmethod
    def get_date_param(name: str, upper_bound: bool = False) -> Optional[datetime]:
        """
        ISO 8601 date or datetime query parameter as naive UTC.

        A bare date names a whole day in ``TIMEZONE``: its first instant, or
        with ``upper_bound`` the first instant of the following day, so that
        ``$lt`` keeps the entire day.

        Raises:
            ValidationException: The value is not an ISO date
        """
        value = request.args.get(name)
        if not value:
            return None
        try:
            if DATE_ONLY.fullmatch(value):
                start, next_day = local_day_bounds(date.fromisoformat(value))
                return next_day if upper_bound else start
            return to_naive_utc(datetime.fromisoformat(value.replace('Z', '+00:00')))
        except ValueError:
            raise ValidationException(
                f"Invalid date for {name}",
                [{"field": name, "message": "Expected an ISO 8601 date", "type": "value_error"}]
            )

    @staticmethod
    def parse_json_body(required: bool = True) -> Dict[str, Any]:
        """
        The request body as a dict. Without a body, ``{}`` unless ``required``.

        Raises:
            ValidationException: Missing required body, or a body that is not a JSON object
        """
        data = request.get_json(silent=True)
        if data is None and not required:
            return {}
        if not isinstance(data, dict):
            raise ValidationException("Request body must be a JSON object")
        return data

    @classmethod
    def parse_model(cls, model: Type[ModelT], required: bool = True) -> ModelT:
        """
        Validate the JSON body against a request model.

        Pydantic errors propagate to the handler that renders them as 400s.
        """
        return model(**cls.parse_json_body(required))

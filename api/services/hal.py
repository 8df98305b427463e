# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
HAL (Hypertext Application Language) response formatting utilities.
Implements HATEOAS Level-3 API responses with conditional affordance links.
"""

from typing import Dict, List, Any, Optional
from urllib.parse import urljoin, urlencode
import math

from models.responses import HalLink
from models.entities import UserContext

PROBLEM_TYPE_BASE = "https://api.cesta-basica.org/problems"

RESOURCE_PATHS = {
    "institution": "/api/institutions",
    "family": "/api/families",
    "delivery": "/api/deliveries",
    "product": "/api/catalog/products",
    "supplier": "/api/catalog/suppliers",
    "stock_movement": "/api/inventory/movements",
    "receipt": "/api/reports/receipts",
}


class HalLinkBuilder:
    """Builder for HAL links with proper URL construction."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip('/') + '/'

    def build_link(
        self,
        path: str,
        method: str = "GET",
        content_type: Optional[str] = None,
        title: Optional[str] = None,
        templated: bool = False
    ) -> HalLink:
        """Build a HAL link with proper URL construction."""
        href = urljoin(self.base_url, path.lstrip('/'))

        return HalLink(
            href=href,
            method=method,
            type=content_type,
            title=title,
            templated=templated or None
        )

    def build_self_link(self, resource_path: str) -> HalLink:
        return self.build_link(resource_path, title="Self")

    def build_collection_link(self, collection_path: str) -> HalLink:
        return self.build_link(collection_path, title="Collection")

    def build_action_link(
        self,
        resource_path: str,
        action: str,
        method: str = "POST",
        title: Optional[str] = None
    ) -> HalLink:
        """Build action link for a resource."""
        action_path = f"{resource_path}/{action}" if action else resource_path
        return self.build_link(
            action_path,
            method=method,
            content_type="application/json",
            title=title or action.title()
        )


class PaginationLinkBuilder:
    """Builder for pagination links in HAL collections."""

    def __init__(self, base_url: str):
        self.link_builder = HalLinkBuilder(base_url)

    def _page_link(self, base_path: str, params: Dict[str, Any], page: int, page_size: int, title: str) -> HalLink:
        query = urlencode({**params, 'page': page, 'page_size': page_size})
        return self.link_builder.build_link(f"{base_path}?{query}", title=title)

    def build_pagination_links(
        self,
        base_path: str,
        current_page: int,
        total_pages: int,
        page_size: int,
        query_params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, HalLink]:
        """Build self/first/prev/next/last links for a collection."""
        params = {k: v for k, v in (query_params or {}).items() if v is not None}
        links = {'self': self._page_link(base_path, params, current_page, page_size, "Current page")}

        if current_page > 1:
            links['first'] = self._page_link(base_path, params, 1, page_size, "First page")
            links['prev'] = self._page_link(base_path, params, current_page - 1, page_size, "Previous page")

        if current_page < total_pages:
            links['next'] = self._page_link(base_path, params, current_page + 1, page_size, "Next page")
            links['last'] = self._page_link(base_path, params, total_pages, page_size, "Last page")

        return links


class AffordanceLinkBuilder:
    """Builder for conditional affordance links based on permissions and state."""

    def __init__(self, base_url: str):
        self.link_builder = HalLinkBuilder(base_url)

    def build_family_affordances(self, family: Dict[str, Any], user_context: UserContext) -> Dict[str, HalLink]:
        """
        Family links: edit, link or unlink, deliver, consent.

        ``unlink`` is only offered to the institution holding the link (or an
        admin); ``link`` only when the family is unassociated.
        """
        path = f"{RESOURCE_PATHS['family']}/{family['id']}"
        links = {
            'self': self.link_builder.build_self_link(path),
            'collection': self.link_builder.build_collection_link(RESOURCE_PATHS['family'])
        }
        linked_to = family.get('institution_id')

        if user_context.has_permission("family:update"):
            links['update'] = self.link_builder.build_action_link(path, "", "PUT", "Update family")
            links['consent'] = self.link_builder.build_action_link(path, "consent", "POST", "Record consent")
        if user_context.has_permission("family:link"):
            if linked_to is None:
                links['link'] = self.link_builder.build_action_link(path, "link", "POST", "Link to institution")
            elif user_context.can_act_for(linked_to):
                links['unlink'] = self.link_builder.build_action_link(path, "link", "DELETE", "Unlink from institution")
        if user_context.has_permission("delivery:create"):
            links['deliver'] = self.link_builder.build_link(
                RESOURCE_PATHS['delivery'], method="POST",
                content_type="application/json", title="Record delivery"
            )
        links['deliveries'] = self.link_builder.build_link(
            f"{RESOURCE_PATHS['delivery']}?family_id={family['id']}", title="Deliveries"
        )
        return links

    def build_delivery_affordances(self, delivery: Dict[str, Any], user_context: UserContext) -> Dict[str, HalLink]:
        path = f"{RESOURCE_PATHS['delivery']}/{delivery['id']}"
        links = {
            'self': self.link_builder.build_self_link(path),
            'family': self.link_builder.build_link(f"{RESOURCE_PATHS['family']}/{delivery['family_id']}", title="Family"),
            'institution': self.link_builder.build_link(
                f"{RESOURCE_PATHS['institution']}/{delivery['institution_id']}", title="Institution"
            )
        }
        if user_context.has_permission("delivery:update") and user_context.can_act_for(delivery['institution_id']):
            links['notes'] = self.link_builder.build_action_link(path, "notes", "PATCH", "Update notes")
        if user_context.has_permission("receipt:read"):
            links['receipt'] = self.link_builder.build_link(f"{path}/receipt", title="Receipt")
        return links

    def build_generic_affordances(
        self,
        resource_type: str,
        resource_id: str,
        user_context: UserContext
    ) -> Dict[str, HalLink]:
        base = RESOURCE_PATHS.get(resource_type, f"/api/{resource_type}s")
        path = f"{base}/{resource_id}"
        links = {
            'self': self.link_builder.build_self_link(path),
            'collection': self.link_builder.build_collection_link(base)
        }
        if user_context.has_permission(f"{resource_type}:update"):
            links['update'] = self.link_builder.build_action_link(path, "", "PUT", "Update")
        if user_context.has_permission(f"{resource_type}:delete"):
            links['delete'] = self.link_builder.build_action_link(path, "", "DELETE", "Delete")
        return links


class HalResponseBuilder:
    """Main HAL response builder."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip('/')
        self.link_builder = HalLinkBuilder(base_url)
        self.pagination_builder = PaginationLinkBuilder(base_url)
        self.affordance_builder = AffordanceLinkBuilder(base_url)

    def build_resource_response(
        self,
        data: Dict[str, Any],
        resource_type: str,
        user_context: Optional[UserContext] = None,
        extra_links: Optional[Dict[str, HalLink]] = None
    ) -> Dict[str, Any]:
        """Build a HAL resource response with appropriate affordance links."""
        response = dict(data)

        if user_context is None:
            links = {'self': self.link_builder.build_self_link(f"/api/{resource_type}")}
        elif resource_type == "family":
            links = self.affordance_builder.build_family_affordances(data, user_context)
        elif resource_type == "delivery":
            links = self.affordance_builder.build_delivery_affordances(data, user_context)
        else:
            links = self.affordance_builder.build_generic_affordances(
                resource_type, data.get('id', ''), user_context
            )

        if extra_links:
            links.update(extra_links)

        response['_links'] = {rel: link.model_dump(exclude_none=True) for rel, link in links.items()}
        return response

    def build_collection_response(
        self,
        items: List[Dict[str, Any]],
        total: int,
        page: int,
        page_size: int,
        collection_path: str,
        query_params: Optional[Dict[str, Any]] = None,
        embedded_name: str = "items"
    ) -> Dict[str, Any]:
        """Build a HAL collection response with pagination links."""
        total_pages = max(math.ceil(total / page_size), 1) if page_size > 0 else 1

        pagination_links = self.pagination_builder.build_pagination_links(
            collection_path,
            page,
            total_pages,
            page_size,
            query_params
        )

        return {
            'total': total,
            'page': page,
            'page_size': page_size,
            'total_pages': total_pages,
            '_links': {rel: link.model_dump(exclude_none=True) for rel, link in pagination_links.items()},
            '_embedded': {
                embedded_name: items
            }
        }

    def build_error_response(
        self,
        error_type: str,
        title: str,
        status: int,
        detail: str,
        instance: str,
        validation_errors: Optional[List[Dict[str, Any]]] = None,
        code: Optional[str] = None
    ) -> Dict[str, Any]:
        """Build RFC 7807 compliant error response with HAL links."""
        error_response = {
            'type': f"{PROBLEM_TYPE_BASE}/{error_type}",
            'title': title,
            'status': status,
            'detail': detail,
            'instance': instance
        }

        if code:
            error_response['code'] = code

        if validation_errors:
            error_response['errors'] = validation_errors

        links = {
            'help': self.link_builder.build_link(
                f"/docs/errors#{error_type}",
                title="Error documentation"
            )
        }

        if error_type == "validation-error":
            links['schema'] = self.link_builder.build_link(
                "/openapi/openapi.json",
                title="API schema"
            )
        elif error_type == "authentication-required":
            links['login'] = self.link_builder.build_link(
                "/api/auth/login",
                method="POST",
                content_type="application/json",
                title="Login"
            )

        error_response['_links'] = {rel: link.model_dump(exclude_none=True) for rel, link in links.items()}
        return error_response


class HalFormatter:
    """High-level HAL formatter with convenience methods."""

    def __init__(self, base_url: str):
        self.builder = HalResponseBuilder(base_url)

    def format_resource(
        self,
        resource: Dict[str, Any],
        resource_type: str,
        user_context: UserContext
    ) -> Dict[str, Any]:
        return self.builder.build_resource_response(resource, resource_type, user_context)

    def format_collection(
        self,
        resources: List[Dict[str, Any]],
        resource_type: str,
        total: int,
        page: int,
        page_size: int,
        user_context: UserContext,
        filters: Optional[Dict[str, Any]] = None,
        collection_path: Optional[str] = None
    ) -> Dict[str, Any]:
        """Format a collection, adding HAL links to each embedded resource."""
        formatted = [
            self.format_resource(resource, resource_type, user_context)
            for resource in resources
        ]
        return self.builder.build_collection_response(
            formatted,
            total,
            page,
            page_size,
            collection_path or RESOURCE_PATHS.get(resource_type, f"/api/{resource_type}s"),
            filters
        )

    def format_validation_error(
        self,
        detail: str,
        instance: str,
        validation_errors: List[Dict[str, Any]]
    ) -> Dict[str, Any]:
        return self.builder.build_error_response(
            "validation-error", "Validation Error", 400, detail, instance, validation_errors
        )

    def format_server_error(self, detail: str, instance: str) -> Dict[str, Any]:
        return self.builder.build_error_response(
            "internal-server-error", "Internal Server Error", 500, detail, instance
        )


def create_hal_formatter(base_url: str) -> HalFormatter:
    """Create a HAL formatter instance."""
    return HalFormatter(base_url)

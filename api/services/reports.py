# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Receipts, dashboard statistics, alerts and CSV exports.
"""

import csv
import io
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from opentelemetry import trace
from pymongo import ASCENDING, DESCENDING

from models.base import local_timezone, utcnow
from models.entities import Delivery, Family, Receipt, StockMovement, UserContext
from models.enums import ReceiptType
from models.responses import AlertResponse
from domain.alerts import FRAUD_WINDOW_DAYS, detect_expired_blocks, detect_multi_institution_deliveries
from domain.documents import format_cpf
from domain.eligibility import is_block_active
from domain.receipts import delivery_transaction_id
from middleware.auth import require_institution_scope
from middleware.error_handler import AuthorizationException, NotFoundException, ValidationException
from .audit import AuditService
from .mongodb import MongoDBService, PaginationResult, to_document, from_document, to_object_ids

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

RECEIPTS = "receipts"
DELIVERIES = "deliveries"
MOVEMENTS = "stock_movements"
FAMILIES = "families"
INSTITUTIONS = "institutions"
PRODUCTS = "products"
LINKS = "institution_families"

CSV_BOM = "\ufeff"

DELIVERY_HEADERS = ["Nome", "Data", "Instituição", "Contato", "Período Bloqueio", "Observações"]
FAMILY_HEADERS = ["Nome", "Contato", "Membros", "Status", "Telefone"]
INSTITUTION_HEADERS = ["Nome", "Endereço", "Telefone"]
SUMMARY_HEADERS = ["Categoria", "Valor"]

REPORT_FILENAMES = {
    "deliveries": "relatorio_entregas",
    "families": "relatorio_familias",
    "institutions": "relatorio_instituicoes",
    "summary": "relatorio_resumo",
}


def format_local_date(value: Optional[datetime]) -> str:
    """``DD/MM/YYYY`` in the configured timezone; stored datetimes are naive UTC."""
    if value is None:
        return ""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(local_timezone()).strftime("%d/%m/%Y")


def render_csv(headers: List[str], rows: List[Dict[str, Any]]) -> str:
    """CSV text with a UTF-8 BOM so spreadsheet tools pick the right encoding."""
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=headers, extrasaction="ignore", lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({header: "" if row.get(header) is None else row.get(header) for header in headers})
    return CSV_BOM + output.getvalue()


def report_filename(report: str, today: Optional[datetime] = None) -> str:
    today = today or datetime.now(local_timezone())
    return f"{REPORT_FILENAMES[report]}_{today.strftime('%Y-%m-%d')}.csv"


def _year_bounds(year: int) -> Tuple[datetime, datetime]:
    return datetime(year, 1, 1), datetime(year + 1, 1, 1)


class ReceiptService:
    """Receipt references for deliveries and stock movements."""

    def __init__(self, mongo_service: MongoDBService, audit_service: AuditService):
        self.mongo_service = mongo_service
        self.audit_service = audit_service

    def transaction_id_for(self, delivery: Delivery) -> str:
        """``NNN/YYYY`` position of the delivery within its calendar year."""
        start, end = _year_bounds(delivery.delivery_date.year)
        documents = self.mongo_service.find(
            DELIVERIES,
            {"deliveryDate": {"$gte": start, "$lt": end}},
            projection={"deliveryDate": 1, "createdAt": 1}
        )
        year_deliveries = [
            {"id": doc["id"], "delivery_date": doc.get("deliveryDate"), "created_at": doc.get("createdAt")}
            for doc in documents
        ]
        return delivery_transaction_id(delivery.id, delivery.delivery_date, year_deliveries)

    def generate_receipt(
        self,
        receipt_type: str,
        institution_id: str,
        reference_id: str,
        user_context: UserContext
    ) -> Receipt:
        """
        Store a receipt reference for a delivery or stock movement.

        Raises:
            NotFoundException: The referenced delivery or movement does not exist
        """
        with tracer.start_as_current_span("receipts.generate") as span:
            span.set_attributes({
                "receipt.type": receipt_type,
                "receipt.reference_id": reference_id,
                "institution.id": institution_id
            })

            transaction_id = None
            if receipt_type == ReceiptType.DELIVERY:
                document = self.mongo_service.find_by_id(DELIVERIES, reference_id)
                if not document:
                    raise NotFoundException(f"Delivery {reference_id} not found")
                delivery = Delivery(**from_document(document))
                if delivery.institution_id != institution_id:
                    raise AuthorizationException("Delivery belongs to another institution")
                transaction_id = self.transaction_id_for(delivery)
            else:
                document = self.mongo_service.find_by_id(MOVEMENTS, reference_id)
                if not document:
                    raise NotFoundException(f"Stock movement {reference_id} not found")
                if document.get("institutionId") != institution_id:
                    raise AuthorizationException("Stock movement belongs to another institution")

            receipt = Receipt(
                receipt_type=receipt_type,
                institution_id=institution_id,
                reference_id=reference_id,
                transaction_id=transaction_id,
                generated_by_user_id=user_context.user_id
            )
            self.mongo_service.create(
                RECEIPTS, to_document(receipt.model_dump()), user_context.user_id, doc_id=receipt.id
            )
            if receipt_type == ReceiptType.DELIVERY:
                self.mongo_service.update_by_id(DELIVERIES, reference_id, {"receiptId": receipt.id}, user_context.user_id)

            self.audit_service.log_action(
                user_context, "receipt", receipt.id, "create", after=receipt.model_dump(mode="json")
            )
            logger.info(
                "Receipt generated",
                extra={
                    "receipt_id": receipt.id,
                    "receipt_type": receipt_type,
                    "reference_id": reference_id,
                    "transaction_id": transaction_id
                }
            )
            return receipt

    def request_receipt(
        self,
        receipt_type: str,
        reference_id: str,
        user_context: UserContext
    ) -> Receipt:
        """Generate a receipt on demand, for the institution owning the reference."""
        collection = DELIVERIES if receipt_type == ReceiptType.DELIVERY else MOVEMENTS
        document = self.mongo_service.find_by_id(collection, reference_id)
        if not document:
            raise NotFoundException(f"Reference {reference_id} not found")
        institution_id = require_institution_scope(user_context, document.get("institutionId"))
        return self.generate_receipt(receipt_type, institution_id, reference_id, user_context)

    def get_receipt(self, receipt_id: str, user_context: UserContext) -> Receipt:
        document = self.mongo_service.find_by_id(RECEIPTS, receipt_id)
        if not document:
            raise NotFoundException(f"Receipt {receipt_id} not found")
        receipt = Receipt(**from_document(document))
        if not user_context.can_act_for(receipt.institution_id):
            raise AuthorizationException("Receipt belongs to another institution")
        return receipt

    def list_receipts(
        self,
        user_context: UserContext,
        institution_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 20
    ) -> PaginationResult:
        institution_id = require_institution_scope(user_context, institution_id)
        result = self.mongo_service.paginate(
            RECEIPTS, page=page, page_size=page_size,
            filters={"institutionId": institution_id},
            sort_by="generatedAt", sort_order=DESCENDING
        )
        result.items = [Receipt(**from_document(doc)) for doc in result.items]
        return result

    def receipt_content(self, receipt_id: str, user_context: UserContext) -> Dict[str, Any]:
        """
        Everything a client needs to render the receipt document.

        Deliveries list the products taken from stock for them; movements
        describe the single movement.
        """
        with tracer.start_as_current_span("receipts.content") as span:
            receipt = self.get_receipt(receipt_id, user_context)
            span.set_attribute("receipt.type", receipt.receipt_type)

            institution = self.mongo_service.find_by_id(INSTITUTIONS, receipt.institution_id) or {}
            content: Dict[str, Any] = {
                "receipt": receipt.model_dump(mode="json"),
                "institution": {
                    "id": receipt.institution_id,
                    "name": institution.get("name"),
                    "address": institution.get("address"),
                    "phone": institution.get("phone")
                }
            }

            if receipt.receipt_type == ReceiptType.DELIVERY:
                document = self.mongo_service.find_by_id(DELIVERIES, receipt.reference_id, include_deleted=True)
                if not document:
                    raise NotFoundException(f"Delivery {receipt.reference_id} not found")
                delivery = Delivery(**from_document(document))
                family_doc = self.mongo_service.find_by_id(FAMILIES, delivery.family_id, include_deleted=True) or {}
                movements = [
                    StockMovement(**from_document(doc))
                    for doc in self.mongo_service.find(MOVEMENTS, {"deliveryId": delivery.id})
                ]
                products = self._products(m.product_id for m in movements)
                content["delivery"] = {
                    "id": delivery.id,
                    "delivery_date": format_local_date(delivery.delivery_date),
                    "blocking_period_days": delivery.blocking_period_days,
                    "notes": delivery.notes
                }
                content["family"] = {
                    "name": family_doc.get("name"),
                    "contact_person": family_doc.get("contactPerson"),
                    "cpf": format_cpf(family_doc["cpf"]) if family_doc.get("cpf") else None,
                    "address": family_doc.get("address"),
                    "phone": family_doc.get("phone")
                }
                content["items"] = [
                    {
                        "product_name": products.get(m.product_id, {}).get("name", "Produto"),
                        "quantity": m.quantity,
                        "unit": products.get(m.product_id, {}).get("unit", "un")
                    }
                    for m in movements
                ]
            else:
                document = self.mongo_service.find_by_id(MOVEMENTS, receipt.reference_id, include_deleted=True)
                if not document:
                    raise NotFoundException(f"Stock movement {receipt.reference_id} not found")
                movement = StockMovement(**from_document(document))
                product = self._products([movement.product_id]).get(movement.product_id, {})
                supplier = (
                    self.mongo_service.find_by_id("suppliers", movement.supplier_id, include_deleted=True)
                    if movement.supplier_id else None
                ) or {}
                content["movement"] = {
                    "id": movement.id,
                    "movement_type": movement.movement_type,
                    "movement_date": format_local_date(movement.movement_date),
                    "product_name": product.get("name"),
                    "unit": product.get("unit"),
                    "quantity": movement.quantity,
                    "supplier_name": supplier.get("name"),
                    "notes": movement.notes
                }

            return content

    def _products(self, product_ids) -> Dict[str, Dict[str, Any]]:
        ids = list(set(product_ids))
        if not ids:
            return {}
        documents = self.mongo_service.find(PRODUCTS, {"_id": {"$in": to_object_ids(ids)}}, include_deleted=True)
        return {doc["id"]: doc for doc in documents}


class ReportService:
    """Dashboard counters, alerts and CSV exports."""

    def __init__(self, mongo_service: MongoDBService, redis_service=None, stats_ttl_seconds: int = 60):
        self.mongo_service = mongo_service
        self.redis_service = redis_service
        self.stats_ttl_seconds = stats_ttl_seconds

    def _cached(self, scope: str, compute) -> Dict[str, Any]:
        if self.redis_service is not None:
            cached = self.redis_service.get_cached_stats(scope)
            if cached is not None:
                return cached
        stats = compute()
        if self.redis_service is not None:
            self.redis_service.cache_stats(scope, stats, self.stats_ttl_seconds)
        return stats

    def invalidate(self, user_context: UserContext, *institution_ids: Optional[str]) -> None:
        """Drop cached counters touched by a write: admin, the caller's and any named institution."""
        if self.redis_service is None:
            return
        self.redis_service.invalidate_stats("admin", user_context.institution_id, *institution_ids)

    def _blocked_filter(self, now: datetime) -> Dict[str, Any]:
        return {"isBlocked": True, "blockedUntil": {"$gt": now}}

    def admin_stats(self) -> Dict[str, Any]:
        """System-wide counters; ``blockedFamilies`` counts active blocks only."""
        def compute():
            now = utcnow()
            return {
                "totalInstitutions": self.mongo_service.count(INSTITUTIONS),
                "totalFamilies": self.mongo_service.count(FAMILIES),
                "totalDeliveries": self.mongo_service.count(DELIVERIES),
                "blockedFamilies": self.mongo_service.count(FAMILIES, self._blocked_filter(now))
            }

        with tracer.start_as_current_span("reports.admin_stats"):
            return self._cached("admin", compute)

    def institution_stats(self, user_context: UserContext, institution_id: Optional[str] = None) -> Dict[str, Any]:
        institution_id = require_institution_scope(user_context, institution_id)

        def compute():
            now = utcnow()
            blocked = self._blocked_filter(now)
            blocked["blockedByInstitutionId"] = institution_id
            return {
                "associatedFamilies": self.mongo_service.count(LINKS, {"institutionId": institution_id}),
                "institutionDeliveries": self.mongo_service.count(DELIVERIES, {"institutionId": institution_id}),
                "blockedByInstitution": self.mongo_service.count(FAMILIES, blocked),
                "recentDeliveries": self.mongo_service.count(
                    DELIVERIES,
                    {"institutionId": institution_id, "deliveryDate": {"$gte": now - timedelta(days=30)}}
                )
            }

        with tracer.start_as_current_span("reports.institution_stats") as span:
            span.set_attribute("institution.id", institution_id)
            return self._cached(institution_id, compute)

    def alerts(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Fraud alerts first, then expired blocks."""
        with tracer.start_as_current_span("reports.alerts") as span:
            now = now or utcnow()
            since = now - timedelta(days=FRAUD_WINDOW_DAYS)

            deliveries = [
                from_document(doc) for doc in self.mongo_service.find(
                    DELIVERIES, {"deliveryDate": {"$gte": since}},
                    projection={"familyId": 1, "institutionId": 1, "deliveryDate": 1}
                )
            ]
            families = [
                from_document(doc) for doc in self.mongo_service.find(
                    FAMILIES, {"isBlocked": True},
                    projection={"name": 1, "isBlocked": 1, "blockedUntil": 1}
                )
            ]
            family_ids = list({d["family_id"] for d in deliveries})
            names = {
                doc["id"]: doc.get("name")
                for doc in self.mongo_service.find(
                    FAMILIES, {"_id": {"$in": to_object_ids(family_ids)}}, projection={"name": 1}
                )
            } if family_ids else {}

            alerts = detect_multi_institution_deliveries(deliveries, names, now)
            alerts += detect_expired_blocks(families, now)
            span.set_attribute("alerts.count", len(alerts))

            return [
                AlertResponse(
                    alert_type=alert.alert_type.value,
                    severity=alert.severity.value,
                    family_id=alert.family_id,
                    family_name=alert.family_name,
                    message=alert.message,
                    institution_ids=alert.institution_ids
                ).to_dict()
                for alert in alerts
            ]

    # CSV exports

    def _institution_names(self) -> Dict[str, Dict[str, Any]]:
        return {doc["id"]: doc for doc in self.mongo_service.find(INSTITUTIONS, include_deleted=True)}

    def _scope(self, user_context: UserContext, institution_id: Optional[str]) -> Optional[str]:
        if user_context.is_admin and not institution_id:
            return None
        return require_institution_scope(user_context, institution_id)

    def export_deliveries(
        self,
        user_context: UserContext,
        institution_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> str:
        with tracer.start_as_current_span("reports.export_deliveries") as span:
            if date_from and date_to and date_from > date_to:
                raise ValidationException("date_from must not be after date_to")

            scope = self._scope(user_context, institution_id)
            query: Dict[str, Any] = {}
            if scope:
                query["institutionId"] = scope
            if date_from or date_to:
                query["deliveryDate"] = {}
                if date_from:
                    query["deliveryDate"]["$gte"] = date_from
                if date_to:
                    query["deliveryDate"]["$lt"] = date_to

            deliveries = self.mongo_service.find(DELIVERIES, query, sort_by="deliveryDate", sort_order=DESCENDING)
            family_ids = list({d["familyId"] for d in deliveries})
            families = {
                doc["id"]: doc for doc in self.mongo_service.find(
                    FAMILIES, {"_id": {"$in": to_object_ids(family_ids)}}, include_deleted=True
                )
            } if family_ids else {}
            institutions = self._institution_names()

            rows = []
            for delivery in deliveries:
                family = families.get(delivery["familyId"], {})
                rows.append({
                    "Nome": family.get("name", ""),
                    "Data": format_local_date(delivery.get("deliveryDate")),
                    "Instituição": institutions.get(delivery["institutionId"], {}).get("name", ""),
                    "Contato": family.get("contactPerson", ""),
                    "Período Bloqueio": f"{delivery['blockingPeriodDays']} dias" if delivery.get("blockingPeriodDays") else "",
                    "Observações": delivery.get("notes") or ""
                })

            span.set_attribute("reports.rows", len(rows))
            return render_csv(DELIVERY_HEADERS, rows)

    def _families_in_scope(self, scope: Optional[str]) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if scope:
            ids = [doc["familyId"] for doc in self.mongo_service.find(LINKS, {"institutionId": scope})]
            query["_id"] = {"$in": to_object_ids(ids)}
        return self.mongo_service.find(FAMILIES, query, sort_by="name", sort_order=ASCENDING)

    def export_families(self, user_context: UserContext, institution_id: Optional[str] = None) -> str:
        """Status reflects the block as evaluated now, not the raw flag."""
        with tracer.start_as_current_span("reports.export_families") as span:
            scope = self._scope(user_context, institution_id)
            now = utcnow()
            rows = []
            for doc in self._families_in_scope(scope):
                family = Family(**from_document(doc))
                rows.append({
                    "Nome": family.name,
                    "Contato": family.contact_person,
                    "Membros": family.members_count,
                    "Status": "Bloqueada" if is_block_active(family, now) else "Ativa",
                    "Telefone": family.phone or ""
                })
            span.set_attribute("reports.rows", len(rows))
            return render_csv(FAMILY_HEADERS, rows)

    def export_institutions(self, user_context: UserContext) -> str:
        with tracer.start_as_current_span("reports.export_institutions"):
            query = {} if user_context.is_admin else {"_id": {"$in": to_object_ids([user_context.institution_id])}}
            rows = [
                {"Nome": doc.get("name", ""), "Endereço": doc.get("address") or "", "Telefone": doc.get("phone") or ""}
                for doc in self.mongo_service.find(INSTITUTIONS, query, sort_by="name", sort_order=ASCENDING)
            ]
            return render_csv(INSTITUTION_HEADERS, rows)

    def summary(
        self,
        user_context: UserContext,
        institution_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> Dict[str, int]:
        scope = self._scope(user_context, institution_id)
        now = utcnow()

        families = [Family(**from_document(doc)) for doc in self._families_in_scope(scope)]
        delivery_query: Dict[str, Any] = {"institutionId": scope} if scope else {}
        if date_from or date_to:
            delivery_query["deliveryDate"] = {}
            if date_from:
                delivery_query["deliveryDate"]["$gte"] = date_from
            if date_to:
                delivery_query["deliveryDate"]["$lt"] = date_to

        blocked = sum(1 for family in families if is_block_active(family, now))
        return {
            "totalFamilies": len(families),
            "totalDeliveries": self.mongo_service.count(DELIVERIES, delivery_query),
            "totalInstitutions": self.mongo_service.count(INSTITUTIONS) if not scope else 1,
            "blockedFamilies": blocked
        }

    def export_summary(
        self,
        user_context: UserContext,
        institution_id: Optional[str] = None,
        date_from: Optional[datetime] = None,
        date_to: Optional[datetime] = None
    ) -> str:
        with tracer.start_as_current_span("reports.export_summary"):
            stats = self.summary(user_context, institution_id, date_from, date_to)
            rows = [
                {"Categoria": "Total de Famílias", "Valor": stats["totalFamilies"]},
                {"Categoria": "Total de Entregas", "Valor": stats["totalDeliveries"]},
                {"Categoria": "Total de Instituições", "Valor": stats["totalInstitutions"]},
                {"Categoria": "Famílias Bloqueadas", "Valor": stats["blockedFamilies"]},
                {"Categoria": "Famílias Ativas", "Valor": stats["totalFamilies"] - stats["blockedFamilies"]},
            ]
            return render_csv(SUMMARY_HEADERS, rows)

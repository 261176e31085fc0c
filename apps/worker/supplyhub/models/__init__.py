from supplyhub.billing.models import AcontoPayment, Invoice, InvoiceLine
from supplyhub.correction.models import CorrectionBatch, CorrectionLine
from supplyhub.lifecycle.models import ProcessEvent, ProcessRequest
from supplyhub.messaging.models import DeadLetter, InboundMessage, ProcessedMessageId
from supplyhub.metering.models import MeteringRevision, MeteringSample
from supplyhub.portfolio.models import Contract, MeteringPoint, Product, SupplyPeriod
from supplyhub.pricing.models import GridSubscription, SpotPrice, Tariff, TariffRate
from supplyhub.settlement.models import AggregationReconciliation, BillingPeriod, SettlementLine, SettlementRun

__all__ = [
    "AcontoPayment",
    "AggregationReconciliation",
    "BillingPeriod",
    "Contract",
    "CorrectionBatch",
    "CorrectionLine",
    "DeadLetter",
    "GridSubscription",
    "InboundMessage",
    "Invoice",
    "InvoiceLine",
    "MeteringPoint",
    "MeteringRevision",
    "MeteringSample",
    "ProcessEvent",
    "ProcessRequest",
    "ProcessedMessageId",
    "Product",
    "SettlementLine",
    "SettlementRun",
    "SpotPrice",
    "SupplyPeriod",
    "Tariff",
    "TariffRate",
]

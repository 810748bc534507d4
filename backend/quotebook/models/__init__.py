from .quotes import Quote, QuoteItem, QuoteRevision, QuoteAcceptance
from .invoices import Invoice, InvoiceItem, InvoicePayment
from .counters import DocumentCounter
from .audit import AuditEvent

__all__ = [
    'Quote', 'QuoteItem', 'QuoteRevision', 'QuoteAcceptance',
    'Invoice', 'InvoiceItem', 'InvoicePayment',
    'DocumentCounter',
    'AuditEvent',
]

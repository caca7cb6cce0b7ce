# Services module
from itc_recon.services.gstr2b_import_service import Gstr2bImportService
from itc_recon.services.gstr2b_reconciliation_service import Gstr2bReconciliationService
from itc_recon.services.gstr2b_action_service import Gstr2bActionService
from itc_recon.services.gstr2b_summary_service import Gstr2bSummaryService
from itc_recon.services.vendor_invoice_lookup import VendorInvoiceLookup

__all__ = [
    "Gstr2bImportService",
    "Gstr2bReconciliationService",
    "Gstr2bActionService",
    "Gstr2bSummaryService",
    "VendorInvoiceLookup",
]

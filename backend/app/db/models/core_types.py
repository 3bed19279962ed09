import enum

class RecordKind(str, enum.Enum):
    invoice = "INVOICE"
    payment = "PAYMENT"

class MergeState(str, enum.Enum):
    pending = "PENDING"
    permanent = "PERMANENT"

class AuditAction(str, enum.Enum):
    merge = "SUPPLIER_MERGE"
    undo = "SUPPLIER_MERGE_UNDO"
    made_permanent = "SUPPLIER_MERGE_PERMANENT"

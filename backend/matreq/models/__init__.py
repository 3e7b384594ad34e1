from .directory import Site, Store, User, Role, UserRole
from .catalog import Unit, Material
from .requests import Request, RequestItem, Approval, RequestStatus, ApprovalAction
from .stock import StockRecord, StockMovement, MovementType, MovementSource
from .audit import AuditLog

__all__ = [
    'Site', 'Store', 'User', 'Role', 'UserRole',
    'Unit', 'Material',
    'Request', 'RequestItem', 'Approval', 'RequestStatus', 'ApprovalAction',
    'StockRecord', 'StockMovement', 'MovementType', 'MovementSource',
    'AuditLog',
]

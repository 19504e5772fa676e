from .territories import (
    Territory, TerritoryPostalCode, TerritoryProtectionRule,
    TerritoryAssignment, TerritoryTransferHistory, TerritoryConflict,
)
from .commissions import CommissionRule, CommissionTransaction
from .accounts import SalesRep, BusinessAccount

__all__ = [
    'Territory', 'TerritoryPostalCode', 'TerritoryProtectionRule',
    'TerritoryAssignment', 'TerritoryTransferHistory', 'TerritoryConflict',
    'CommissionRule', 'CommissionTransaction',
    'SalesRep', 'BusinessAccount',
]

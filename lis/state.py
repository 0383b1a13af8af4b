"""
Reconciliation states for staging result rows.

A row's status column is never written directly.  The engine builds one
of the variants below and :func:`columns_for` turns it into the full set
of columns, so a ``posted`` row without an order (or a ``staging`` row
with one) cannot be produced.

    staging ──► mapped ──► posted
       │          │
       └────┬─────┘
            ▼
          error ──► staging (retry)
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Staging:
    status = 'staging'


@dataclass(frozen=True)
class Mapped:
    test_id: int
    status = 'mapped'


@dataclass(frozen=True)
class Posted:
    test_id: int
    order_id: int
    order_item_id: Optional[int] = None
    patient_id: Optional[str] = None
    status = 'posted'


@dataclass(frozen=True)
class Error:
    reason: str
    # Destination already reached before failing, kept for diagnosis
    test_id: Optional[int] = None
    status = 'error'


RowState = Union[Staging, Mapped, Posted, Error]

_TRANSITIONS = {
    'staging': {'mapped', 'error'},
    'mapped': {'posted', 'error'},
    'posted': set(),
    'error': {'staging', 'mapped'},
}


def can_transition(current: str, new: str) -> bool:
    """Return True if a row may move from ``current`` to ``new``."""
    return new in _TRANSITIONS.get(current, set())


def state_of(row) -> RowState:
    """Rebuild the variant from a stored row."""
    if row.status == 'posted':
        return Posted(
            test_id=row.lis_test_id,
            order_id=row.lis_order_id,
            order_item_id=row.lis_order_item_id,
            patient_id=row.patient_id,
        )
    if row.status == 'mapped':
        return Mapped(test_id=row.lis_test_id)
    if row.status == 'error':
        return Error(reason=row.error_message or 'unknown error', test_id=row.lis_test_id)
    return Staging()


def columns_for(state: RowState) -> dict:
    """Every column that depends on the state, with consistent values."""
    cols = {
        'status': state.status,
        'lis_test_id': None,
        'lis_order_id': None,
        'lis_order_item_id': None,
        'patient_id': None,
        'error_message': '',
    }
    if isinstance(state, Mapped):
        if state.test_id is None:
            raise ValueError('mapped state requires a test id')
        cols['lis_test_id'] = state.test_id
    elif isinstance(state, Posted):
        if state.test_id is None or state.order_id is None:
            raise ValueError('posted state requires a test id and an order id')
        cols.update(
            lis_test_id=state.test_id,
            lis_order_id=state.order_id,
            lis_order_item_id=state.order_item_id,
            patient_id=state.patient_id,
        )
    elif isinstance(state, Error):
        cols['error_message'] = (state.reason or 'unknown error')[:2000]
        cols['lis_test_id'] = state.test_id
    return cols

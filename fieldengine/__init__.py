"""
Field Closeout — Engine Package

Per-work-order state the completion pipeline reads from, with no
knowledge of the pipeline itself:

  - fieldengine.equipment: EquipmentDispositionStore (per-key isolated)
  - fieldengine.drafts: DraftStore port, in-memory and SQLite
  - fieldengine.hotbill: HotbillEngine state machine
  - fieldengine.removal_line: RemovalLineTree, ASTicket
  - fieldengine.codes: CodeBook, ReferenceData
  - fieldengine.config_loader / fieldengine.logging: ambient plumbing
"""

from fieldengine.codes import CodeBook, ReferenceData
from fieldengine.drafts import DraftStore, InMemoryDraftStore, SQLiteDraftStore
from fieldengine.equipment import EquipmentDispositionStore, EquipmentItem
from fieldengine.hotbill import HotbillEngine, HotbillState
from fieldengine.removal_line import RemovalLineTree, RemovalLineState
from fieldengine.transitions import ActionUnavailable, IllegalStateTransition

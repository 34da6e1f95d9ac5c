from enum import Enum


LIFECYCLE_WORKFLOW_ID = "asset-lifecycle"


class AssetLifecycleState(str, Enum):
    AVAILABLE = "AVAILABLE"
    RESERVED = "RESERVED"
    IN_USE = "IN_USE"
    MAINTENANCE = "MAINTENANCE"
    INCIDENT = "INCIDENT"
    RETURNED = "RETURNED"
    OUT_OF_SERVICE = "OUT_OF_SERVICE"


class ContractStatus:
    # Stored as open strings; these are the values the engine acts on.
    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"
    FINISHED = "FINISHED"


HOLDING_CONTRACT_STATUSES = {ContractStatus.ACTIVE, ContractStatus.DRAFT}


class IncidentDecision(str, Enum):
    REPLACE = "REPLACE"
    PAUSE = "PAUSE"
    CONTINUE = "CONTINUE"


INITIAL_STATE = AssetLifecycleState.AVAILABLE
TERMINAL_STATES = {AssetLifecycleState.OUT_OF_SERVICE}

# Edges a caller may request through the generic state-change operation.
# INCIDENT has no entry: only incident resolution moves an asset out of it.
LIFECYCLE_TRANSITIONS = {
    AssetLifecycleState.AVAILABLE: {AssetLifecycleState.RESERVED, AssetLifecycleState.MAINTENANCE},
    AssetLifecycleState.RESERVED: {AssetLifecycleState.IN_USE, AssetLifecycleState.AVAILABLE},
    AssetLifecycleState.IN_USE: {
        AssetLifecycleState.AVAILABLE,
        AssetLifecycleState.MAINTENANCE,
        AssetLifecycleState.INCIDENT,
        AssetLifecycleState.RETURNED,
    },
    AssetLifecycleState.MAINTENANCE: {AssetLifecycleState.AVAILABLE, AssetLifecycleState.OUT_OF_SERVICE},
    AssetLifecycleState.RETURNED: {AssetLifecycleState.AVAILABLE, AssetLifecycleState.MAINTENANCE},
    AssetLifecycleState.INCIDENT: set(),
    AssetLifecycleState.OUT_OF_SERVICE: set(),
}

INCIDENT_EXIT_STATES = {AssetLifecycleState.MAINTENANCE, AssetLifecycleState.IN_USE}

WORKFLOW_STATES = {
    LIFECYCLE_WORKFLOW_ID: AssetLifecycleState,
}

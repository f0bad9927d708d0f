"""Agent supervision: records, missions, processes, events and the lifecycle."""

from haven.agents.events import EVENT_NAMES, Event, EventBus
from haven.agents.logtail import LogTailer, read_last_lines
from haven.agents.mission import AgentResult, Mission, load_result
from haven.agents.process import LocalProcessProvider, ProcessHandle, ProcessProvider, TerminateResult
from haven.agents.records import AgentRecord, AgentRecordStore, FileAgentRecordStore, WorktreeRef
from haven.agents.lifecycle import (
    AgentLifecycle,
    AgentView,
    KillResult,
    ReapResult,
    RejectResult,
    SpawnResult,
    WaitResult,
)

__all__ = [
    "EVENT_NAMES",
    "AgentLifecycle",
    "AgentRecord",
    "AgentRecordStore",
    "AgentResult",
    "AgentView",
    "Event",
    "EventBus",
    "FileAgentRecordStore",
    "KillResult",
    "LocalProcessProvider",
    "LogTailer",
    "Mission",
    "ProcessHandle",
    "ProcessProvider",
    "ReapResult",
    "RejectResult",
    "SpawnResult",
    "TerminateResult",
    "WaitResult",
    "WorktreeRef",
    "load_result",
    "read_last_lines",
]

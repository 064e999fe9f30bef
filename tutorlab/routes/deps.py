"""Request-scoped access to the engine objects built in server.py."""

from fastapi import HTTPException, Request

from tutorlab.errors import PersistenceError
from tutorlab.services.flow_guard import FlowGuard
from tutorlab.services.flow_machine import FlowRegistry, FlowStateMachine
from tutorlab.services.response_generator import ResponseGenerator
from tutorlab.services.telemetry_recorder import TelemetryRecorder


def get_flows(request: Request) -> FlowRegistry:
    return request.app.state.flows


def get_guard(request: Request) -> FlowGuard:
    return request.app.state.guard


def get_recorder(request: Request) -> TelemetryRecorder:
    return request.app.state.recorder


def get_generator(request: Request) -> ResponseGenerator:
    return request.app.state.generator


async def load_machine(flows: FlowRegistry, participant_id: str) -> FlowStateMachine:
    try:
        return await flows.get(participant_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))

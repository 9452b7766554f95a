from fastapi import Request

from examdesk.clients.material_generator import MaterialGeneratorClient
from examdesk.clients.proctoring import ProctoringClient
from examdesk.clients.storage import ObjectStorage
from examdesk.core.config import Settings
from examdesk.core.realtime import RealtimeHub
from examdesk.services.scoring import ScoringQueue


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_hub(request: Request) -> RealtimeHub:
    return request.app.state.hub


def get_scoring(request: Request) -> ScoringQueue:
    return request.app.state.scoring


def get_generator(request: Request) -> MaterialGeneratorClient:
    return request.app.state.generator


def get_proctoring(request: Request) -> ProctoringClient:
    return request.app.state.proctoring


def get_storage(request: Request) -> ObjectStorage:
    return request.app.state.storage

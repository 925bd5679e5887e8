"""Wires services together once per application."""

from typing import Optional

from motor.motor_asyncio import AsyncIOMotorDatabase

from .config.settings import settings
from .services import (
    AnswerSheetRepository,
    AnswerSheetService,
    BackgroundTaskRunner,
    CorrectionService,
    GeminiClient,
    GridFSStorage,
    ImageAnalysisService,
    NotificationDispatcher,
    NotificationRepository,
    NotificationService,
    ReconciliationService,
    RollNumberDetector,
    RosterDirectory,
    SessionAuthenticator,
    StudentMatcher,
    UploadPipeline,
    build_detector,
)


class ServiceContainer:
    """Explicitly constructed services shared by the route factories."""

    def __init__(
        self,
        repository,
        roster,
        storage,
        notification_repository,
        detector: RollNumberDetector,
        correction: Optional[CorrectionService],
        authenticator,
        runner: Optional[BackgroundTaskRunner] = None,
        image_service: Optional[ImageAnalysisService] = None,
    ):
        self.repository = repository
        self.roster = roster
        self.storage = storage
        self.authenticator = authenticator
        self.runner = runner or BackgroundTaskRunner()
        self.image_service = image_service or ImageAnalysisService()

        self.matcher = StudentMatcher(roster)
        self.dispatcher = NotificationDispatcher(notification_repository)
        self.notifications = NotificationService(notification_repository)
        self.answer_sheets = AnswerSheetService(repository, roster, self.dispatcher, self.matcher)
        self.upload_pipeline = UploadPipeline(
            repository, roster, storage, detector, self.dispatcher, self.matcher, self.image_service
        )
        self.reconciliation = ReconciliationService(
            self.answer_sheets, correction, storage, roster, self.dispatcher, self.runner
        )

    @classmethod
    def from_database(cls, db: AsyncIOMotorDatabase) -> "ServiceContainer":
        image_service = ImageAnalysisService()
        client = GeminiClient() if settings.LLM_API_KEY else None
        return cls(
            repository=AnswerSheetRepository(db),
            roster=RosterDirectory(db),
            storage=GridFSStorage(db),
            notification_repository=NotificationRepository(db),
            detector=build_detector(settings, client, image_service),
            correction=CorrectionService(client) if client else None,
            authenticator=SessionAuthenticator(db),
            image_service=image_service,
        )

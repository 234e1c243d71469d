"""Dependency injection container for core services."""
from typing import Optional

from gomflow.core.config import Settings, load_settings
from gomflow.core.database import GomflowDB, get_db
from gomflow.services.extraction import ExtractionEngine
from gomflow.services.gateway_clients import BillplzClient, PayMongoClient
from gomflow.services.llm_vision import VisionClient
from gomflow.services.matching import Matcher
from gomflow.services.notifications import NotificationDispatcher
from gomflow.services.ocr import OcrReader
from gomflow.services.payment_processor import PaymentProcessor
from gomflow.services.reconciliation_queue import ReconciliationQueue
from gomflow.services.submissions import SubmissionService
from gomflow.services.verification import VerificationStateMachine
from gomflow.services.webhook_adapter import WebhookAdapter
from gomflow.workflows.worker import ReconciliationWorkerPool


class ServiceContainer:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings
        self._db = None
        self._queue = None
        self._notifier = None
        self._state_machine = None
        self._vision = None
        self._ocr = None
        self._extraction = None
        self._matcher = None
        self._adapter = None
        self._processor = None
        self._submissions = None
        self._paymongo = None
        self._billplz = None
        self._workers = None

    def settings(self) -> Settings:
        if not self._settings:
            self._settings = load_settings()
        return self._settings

    def db(self) -> GomflowDB:
        if not self._db:
            self._db = get_db()
        return self._db

    def queue(self) -> ReconciliationQueue:
        if not self._queue:
            # Handlers below depend on the queue; it must exist before they are built.
            self._queue = ReconciliationQueue(self.db(), self.settings().queue)
            self.processor().register()
            self._queue.register("notification", self.notifier().handle_event)
        return self._queue

    def notifier(self) -> NotificationDispatcher:
        queue = self.queue()
        if not self._notifier:
            self._notifier = NotificationDispatcher(self.db(), self.settings().notifications, queue)
        return self._notifier

    def state_machine(self) -> VerificationStateMachine:
        notifier = self.notifier()
        if not self._state_machine:
            self._state_machine = VerificationStateMachine(self.db(), notifier=notifier)
        return self._state_machine

    def vision(self) -> VisionClient:
        if not self._vision:
            self._vision = VisionClient(self.settings().extraction)
        return self._vision

    def ocr(self) -> Optional[OcrReader]:
        if not self._ocr and self.settings().extraction.ocr_enabled:
            self._ocr = OcrReader(self.settings().extraction)
        return self._ocr

    def extraction(self) -> ExtractionEngine:
        if not self._extraction:
            self._extraction = ExtractionEngine(self.settings().extraction, self.vision(), ocr_reader=self.ocr())
        return self._extraction

    def matcher(self) -> Matcher:
        if not self._matcher:
            self._matcher = Matcher(self.settings().policy)
        return self._matcher

    def adapter(self) -> WebhookAdapter:
        if not self._adapter:
            self._adapter = WebhookAdapter(self.settings().gateways)
        return self._adapter

    def processor(self) -> PaymentProcessor:
        queue = self.queue()
        state_machine = self.state_machine()
        if not self._processor:
            self._processor = PaymentProcessor(
                db=self.db(),
                queue=queue,
                state_machine=state_machine,
                extraction_engine=self.extraction(),
                matcher=self.matcher(),
                adapter=self.adapter(),
            )
        return self._processor

    def submissions(self) -> SubmissionService:
        if not self._submissions:
            self._submissions = SubmissionService(self.db())
        return self._submissions

    def paymongo(self) -> PayMongoClient:
        if not self._paymongo:
            self._paymongo = PayMongoClient(self.settings().gateways)
        return self._paymongo

    def billplz(self) -> BillplzClient:
        if not self._billplz:
            self._billplz = BillplzClient(self.settings().gateways)
        return self._billplz

    def workers(self) -> ReconciliationWorkerPool:
        if not self._workers:
            self._workers = ReconciliationWorkerPool(
                self.queue(),
                poll_interval=self.settings().queue.poll_interval_seconds,
            )
        return self._workers

    def reset(self, settings: Optional[Settings] = None) -> None:
        """Drop every built service; the next call rebuilds from ``settings`` (or the environment)."""
        self.__init__(settings)


container = ServiceContainer()

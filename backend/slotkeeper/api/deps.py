"""Shared FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends

from slotkeeper.core.clock import Clock, system_clock
from slotkeeper.services.background_workers import BackgroundWorkerManager, worker_manager
from slotkeeper.services.notification_service import NotificationDispatcher, get_notification_service


def get_clock() -> Clock:
    return system_clock


def get_dispatcher() -> NotificationDispatcher:
    return get_notification_service()


def get_worker_manager() -> BackgroundWorkerManager:
    return worker_manager


ClockDep = Annotated[Clock, Depends(get_clock)]
DispatcherDep = Annotated[NotificationDispatcher, Depends(get_dispatcher)]
WorkerManagerDep = Annotated[BackgroundWorkerManager, Depends(get_worker_manager)]

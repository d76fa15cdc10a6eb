from fastapi import Request

from spinloyal_api.services.notifications import NotificationDispatcher


def get_notification_dispatcher(request: Request) -> NotificationDispatcher:
    return request.app.state.notification_dispatcher

from fastapi import Request

from planstream.services.container import Services


def get_services(request: Request) -> Services:
    return request.app.state.services

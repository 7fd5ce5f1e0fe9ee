from fastapi import Request

from chatroom.services.coordinator import MembershipCoordinator


def get_coordinator(request: Request) -> MembershipCoordinator:
    return request.app.state.coordinator

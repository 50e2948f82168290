"""Request dependencies shared by the API routers."""

from fastapi import Request

from pipeline_control_plane.control_plane import ControlPlane


def get_control_plane(request: Request) -> ControlPlane:
    """Return the process-wide ``ControlPlane`` created during startup."""
    control_plane = getattr(request.app.state, "control_plane", None)
    if control_plane is None:
        control_plane = ControlPlane()
        request.app.state.control_plane = control_plane
    return control_plane

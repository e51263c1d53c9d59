from fastapi import HTTPException, Request, status

from app.services.lms import LMSService


async def get_lms_service(request: Request) -> LMSService:
    service = getattr(request.app.state, "lms", None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="LMS service is not configured",
        )
    return service

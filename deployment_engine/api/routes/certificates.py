from typing import List

from fastapi import APIRouter, Depends, HTTPException

from deployment_engine.api.container import get_engine_service
from deployment_engine.api.schemas.certificate import CertificatePassResponse, CertificateResponse
from deployment_engine.core.errors import PreconditionError, ReloadRejected

router = APIRouter(prefix="/certificates", tags=["certificates"])


@router.get("/", response_model=List[CertificateResponse])
def list_certificates(service=Depends(get_engine_service)):
    return [CertificateResponse(**record.to_dict()) for record in service.certificates()]


@router.post("/pass", response_model=CertificatePassResponse)
def run_certificate_pass(service=Depends(get_engine_service)):
    try:
        result = service.certificate_pass()
    except ReloadRejected as e:
        raise HTTPException(status_code=502, detail=str(e))
    except PreconditionError as e:
        raise HTTPException(status_code=503, detail=str(e))

    return CertificatePassResponse(**result.to_dict())

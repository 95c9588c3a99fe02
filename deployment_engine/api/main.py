from fastapi import FastAPI

from deployment_engine.api.routes.certificates import router as certificates_router
from deployment_engine.api.routes.rollouts import router as rollouts_router

app = FastAPI(title="Deployment Engine API")

@app.get("/health")
def health():
    return {"status": "ok"}

app.include_router(rollouts_router)
app.include_router(certificates_router)

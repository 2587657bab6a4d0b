from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from loanflow.api.routes import router
from loanflow.settings import settings

app = FastAPI(title="Loan Onboarding Orchestrator")

origins = [x.strip() for x in settings.CORS_ORIGINS.split(",") if x.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router)


@app.get("/health")
def health():
    return {"status": "ok", "mode": settings.INTERACTION_MODE}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("loanflow.main:app", host="0.0.0.0", port=8000)

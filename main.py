import uvicorn, logging
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from marketplace.routes.chat_route import router as chat_route
from marketplace.routes.admin_route import router as admin_route
from marketplace.routes.dependencies import shutdown_sessions

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.StreamHandler(),
        logging.FileHandler('app.log')
    ]
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # drop every live Firestore listener before the process exits
    await shutdown_sessions()


app = FastAPI(
    title="Roskilde Trade Chat API",
    description="Real-time chat between buyers and sellers about marketplace listings",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# register the routes
app.include_router(chat_route, prefix="/chat")
app.include_router(admin_route, prefix="/admin")

@app.get("/")
def root():
    return {"message": "Firestore chat backend is running"}


if __name__ == "__main__" :
    uvicorn.run(app, host = "0.0.0.0", port = 9090, log_level = "info")

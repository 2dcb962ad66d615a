from fastapi import APIRouter

from chaptersmith.api.v1.endpoints import books, credits, queues

api_router = APIRouter()

api_router.include_router(books.router, prefix="/books", tags=["books"])
api_router.include_router(queues.router, prefix="/queues", tags=["queues"])
api_router.include_router(credits.router, prefix="/credits", tags=["credits"])

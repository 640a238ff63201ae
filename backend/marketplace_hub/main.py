from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from marketplace_hub.core.config import settings
from marketplace_hub.core.logging import configure_logging
from marketplace_hub.api.v1 import api_v1
from marketplace_hub.db.session import dispose_engine

configure_logging()

app = FastAPI(title=settings.PROJECT_NAME)

# 从环境读取前端白名单（逗号分隔）。本地可配：
# BACKEND_CORS_ORIGINS=http://localhost:5173,https://app.local.test:5173
origins = [o.strip() for o in settings.BACKEND_CORS_ORIGINS.split(",") if o.strip()]


app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)


# Origin 校验（仅对改数据方法）。放行第三方服务器回调（Shopify Webhook）
TRUSTED = set(origins)
WEBHOOK_PATH_PREFIXES = (
    f"{settings.API_PREFIX}/webhooks/",
)

@app.middleware("http")
async def origin_check(request: Request, call_next):
    p = request.url.path

    if p.startswith(WEBHOOK_PATH_PREFIXES):
        # 服务器回调不在浏览器上下文，不适用 Origin 校验
        return await call_next(request)

    if request.method in {"POST", "PUT", "PATCH", "DELETE"}:
        origin = request.headers.get("origin")
        # 有 Origin 但不在白名单里，才拒绝；没有 Origin（curl / worker）放行
        if origin and origin not in TRUSTED:
            return JSONResponse(status_code=403, content={"detail": "Bad Origin"})

    return await call_next(request)


app.include_router(api_v1, prefix=settings.API_PREFIX)


@app.on_event("shutdown")
def _shutdown() -> None:
    dispose_engine()


# 根路径健康探活（方便测试或 Docker 健康检查）
@app.get("/")
def root():
    return {
        "app": settings.PROJECT_NAME,
        "env": settings.ENVIRONMENT,
        "ok": True
    }

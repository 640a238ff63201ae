# 健康检查

from fastapi import APIRouter

router = APIRouter(tags=["health"])

@router.get("/health")
def health():
    # 不探 DB / Redis，只表示进程存活
    return {"status": "ok"}

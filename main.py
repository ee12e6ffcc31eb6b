"""
FastAPI应用主入口
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.routes import admin as admin_routes
from api.routes import payments as payments_routes
from api.middleware import RequestIDMiddleware, LoggingMiddleware
from core.config import settings
from core.exceptions import register_exception_handlers
from core.response import success_response
from core.logging_config import get_logger, configure_logging
from infrastructure.bootstrap import build_default_services
from infrastructure.database import create_tables, dispose_engine
from infrastructure.external.cache import (
    init_redis_client,
    shutdown_redis_client,
)


# 初始化日志：在入口处显式配置，避免模块导入时的副作用
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    # 启动时创建数据库表（仅开发环境）。生产应使用 Alembic 迁移
    if settings.DEBUG:
        await create_tables()
        logger.info("database_initialized", message="Database tables created (development)")
    else:
        logger.info(
            "database_migrations_required",
            message="No auto-create in production, use Alembic migrations (alembic upgrade head)"
        )

    redis = None
    if settings.redis.url:
        try:
            redis = await init_redis_client()
            logger.info("redis_cache_initialized", message="Redis cache initialized")
        except Exception as exc:
            # 无 Redis 时退化为进程内结算锁
            logger.error(
                "redis_cache_init_failed",
                error=str(exc)
            )

    services = build_default_services(redis=redis)
    app.state.settlement = services
    logger.info(
        "settlement_services_initialized",
        lock="redis" if redis is not None else "local",
        gateway=services.gateway is not None,
    )

    yield
    # 关闭时的清理工作
    await services.aclose()
    if redis is not None:
        await shutdown_redis_client()
        logger.info("redis_cache_shutdown", message="Redis cache shutdown")
    await dispose_engine()
    logger.info("application_shutdown", message="Application shutdown")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    debug=settings.DEBUG,
    lifespan=lifespan,
    description="多供应商市场的支付结算核心",
    redoc_url="/redoc",
)

# 中间件后添加者在外层：CORS -> RequestID -> Logging -> 路由
# 日志中间件在 RequestID 之内，才能继承其绑定的 request_id
app.add_middleware(LoggingMiddleware)
app.add_middleware(RequestIDMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册全局异常处理器
register_exception_handlers(app)


# 注册路由
app.include_router(payments_routes.router, prefix="/api/v1")
app.include_router(admin_routes.router, prefix="/api/v1")


# 根路径
@app.get("/", tags=["Root"])
async def root():
    """API根路径"""
    return success_response(
        data={
            "name": settings.PROJECT_NAME,
            "version": settings.VERSION,
            "docs": "/docs",
            "redoc": "/redoc"
        },
        message="welcome"
    )


# 健康检查
@app.get("/health", tags=["Health"])
async def health_check():
    """健康检查端点"""
    return success_response(data={"status": "healthy"}, message="ok")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.DEBUG,
        log_level="debug" if settings.DEBUG else "info"
    )

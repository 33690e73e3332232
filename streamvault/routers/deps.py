"""路由共用依赖。"""

from fastapi import Request

from streamvault.workers.background import Runtime


def get_runtime(request: Request) -> Runtime:
    """返回应用生命周期中创建的运行时。"""
    return request.app.state.runtime

"""SSE 实时事件推送路由。"""

import json
from typing import Any, AsyncGenerator, Literal, Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from loguru import logger

from streamvault.routers.deps import get_runtime
from streamvault.workers.background import Runtime
from streamvault.workers.queue import EventQueue

router = APIRouter(prefix="/api/events", tags=["sse"])

Topic = Literal["downloads", "conversions", "archives", "subscriptions"]

# 浏览器断线后的重连间隔（毫秒）
RETRY_MS = 3000


@router.get("/{topic}")
async def topic_events(topic: Topic, request: Request, runtime: Runtime = Depends(get_runtime)) -> StreamingResponse:
    """
    SSE 端点：持续推送指定主题的记录变更，直到客户端断开。

    每条变更是一个以主题命名的事件，data 为记录的 JSON：
        const source = new EventSource('/api/events/downloads');
        source.addEventListener('downloads', (e) => render(JSON.parse(e.data)));
    """
    return StreamingResponse(
        event_stream(runtime.events, topic, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


async def event_stream(events: EventQueue, topic: str, request: Request) -> AsyncGenerator[str, None]:
    """
    把 EventQueue 的主题流转换为 SSE 帧。

    先发送 retry 与 connected 帧；心跳以注释行发送，不触发客户端事件。
    事件 id 在单个连接内自增。

    参数：
        events: 事件管理器
        topic: 订阅主题
        request: 当前请求，用于检测客户端断开
    """
    logger.info(f"SSE 连接建立 topic={topic}")
    yield f"retry: {RETRY_MS}\n\n"
    yield format_sse("connected", {"topic": topic})

    sequence = 0
    try:
        async for event in events.stream(topic):
            if await request.is_disconnected():
                logger.info(f"SSE 客户端断开 topic={topic}")
                break
            if event.get("type") == "ping":
                yield ": ping\n\n"
                continue
            sequence += 1
            yield format_sse(topic, event["data"], event_id=sequence)
    except Exception as e:
        logger.error(f"SSE 流异常 topic={topic}: {e}")
        yield format_sse("error", {"message": str(e)})
    finally:
        logger.info(f"SSE 连接关闭 topic={topic}, 共推送 {sequence} 条")


def format_sse(event: str, data: Any, event_id: Optional[int] = None) -> str:
    """
    格式化一个具名 SSE 帧。

    参数：
        event: 事件名
        data: 可 JSON 序列化的负载
        event_id: 事件 id，None 时省略

    返回：
        以空行结尾的帧字符串
    """
    lines = [f"event: {event}"]
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"data: {json.dumps(data, ensure_ascii=False)}")
    return "\n".join(lines) + "\n\n"

"""阶段任务队列与事件发布/订阅管理器。"""

import asyncio
from collections import defaultdict, deque
from typing import Any, AsyncGenerator, Callable, Generic, Optional, TypeVar

from loguru import logger

T = TypeVar("T")

Listener = Callable[[str, Any], None]


class StageQueue(Generic[T]):
    """
    单个流水线阶段的无界 FIFO 队列。

    入队从不阻塞；出队挂起直到有元素或取消事件触发。
    元素一旦出队即由消费者负责；出队被取消时已取出的元素放回队首。
    """

    def __init__(self, name: str):
        """
        初始化阶段队列。

        参数：
            name: 阶段名称，仅用于日志
        """
        self.name = name
        self._items: deque = deque()
        self._not_empty = asyncio.Event()

    def enqueue(self, item: T) -> None:
        """将元素加入队尾。"""
        self._items.append(item)
        self._not_empty.set()
        logger.debug(f"{self.name} 队列入队，当前长度 {self.qsize()}")

    async def _get(self) -> T:
        while not self._items:
            self._not_empty.clear()
            await self._not_empty.wait()
        return self._items.popleft()

    async def dequeue(self, cancel_event: Optional[asyncio.Event] = None) -> T:
        """
        取出队首元素。

        参数：
            cancel_event: 取消事件，触发后抛出 asyncio.CancelledError

        返回：
            队首元素
        """
        if cancel_event is None:
            return await self._get()
        if cancel_event.is_set():
            raise asyncio.CancelledError(f"{self.name} 队列出队已取消")

        get_task = asyncio.ensure_future(self._get())
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({get_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            cancel_task.cancel()
            self._release(get_task)
            raise

        cancel_task.cancel()
        if get_task in done and not cancel_event.is_set():
            return get_task.result()

        self._release(get_task)
        raise asyncio.CancelledError(f"{self.name} 队列出队已取消")

    def _release(self, get_task: asyncio.Future) -> None:
        """放弃一次出队：未完成则取消，已取出的元素放回队首。"""
        if get_task.done() and not get_task.cancelled():
            self._items.appendleft(get_task.result())
            self._not_empty.set()
        else:
            get_task.cancel()

    def qsize(self) -> int:
        return len(self._items)


class EventQueue:
    """
    记录变更通知的发布/订阅管理器。

    每次持久化状态变更后同步调用 publish，扇出给：
    - 通过 add_listener 注册的进程内回调
    - 通过 subscribe 注册的 SSE 订阅队列
    投递是尽力而为的，回调异常只记录日志。
    """

    def __init__(self):
        """初始化事件队列管理器。"""
        self._queues: dict[str, list[asyncio.Queue]] = defaultdict(list)
        self._listeners: list[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        """注册回调，参数为 (topic, record)。"""
        self._listeners.append(listener)

    def subscribe(self, topic: str) -> asyncio.Queue:
        """为指定主题创建并注册一个事件队列。"""
        q: asyncio.Queue = asyncio.Queue(maxsize=100)
        self._queues[topic].append(q)
        logger.debug(f"新订阅者注册 topic={topic}, 当前订阅数={len(self._queues[topic])}")
        return q

    def unsubscribe(self, topic: str, q: asyncio.Queue) -> None:
        """取消订阅，从队列列表中移除。"""
        if topic in self._queues and q in self._queues[topic]:
            self._queues[topic].remove(q)
            if not self._queues[topic]:
                del self._queues[topic]
            logger.debug(f"订阅者取消注册 topic={topic}")

    def publish(self, topic: str, record: Any) -> None:
        """向所有回调与订阅者发布一条记录变更。"""
        for listener in list(self._listeners):
            try:
                listener(topic, record)
            except Exception as e:
                logger.exception(f"事件回调异常 topic={topic}: {e}")

        if topic not in self._queues:
            return
        event = {"topic": topic, "data": _to_payload(record)}
        for q in list(self._queues[topic]):
            try:
                q.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(f"事件队列已满，跳过 topic={topic}")

    async def stream(self, topic: str) -> AsyncGenerator[dict, None]:
        """生成器：持续产出指定主题的事件。每 30s 发送心跳保持连接。"""
        q = self.subscribe(topic)
        try:
            while True:
                try:
                    event = await asyncio.wait_for(q.get(), timeout=30.0)
                    yield event
                except asyncio.TimeoutError:
                    yield {"type": "ping"}
        finally:
            self.unsubscribe(topic, q)


def _to_payload(record: Any) -> Any:
    """将记录转换为可 JSON 序列化的字典。"""
    if hasattr(record, "model_dump"):
        return record.model_dump(mode="json")
    return record

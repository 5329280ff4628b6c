"""
回合倒數驅動

每個房間一個 asyncio task，每隔 interval 呼叫一次 tick()，直到 tick()
回報倒數結束。每個房間只有一個迴圈，不是一串自己重新排程的 timer
callback；不論時序如何，tick 與手動 reveal 的競爭都由狀態機裡
帶回合編號的 Locked 檢查決定。
"""
import asyncio
import logging
from typing import Callable, Dict

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

TickFn = Callable[[], bool]


class CountdownRegistry:
    """
    以 room id 為 key 的執行中倒數 task

    - start() 會取代房間已在跑的倒數
    - cancel() 可以從任何 thread 呼叫
    """

    def __init__(self, interval: float = 1.0):
        self.interval = interval
        self._tasks: Dict[str, asyncio.Task] = {}

    def start(self, room_id: str, tick: TickFn) -> asyncio.Task:
        """
        開始房間的倒數（必須在 event loop 上呼叫）

        參數：
            room_id: 房間代碼
            tick: 每個 interval 在 thread pool 執行一次的 blocking callable；
                回傳 False 表示倒數結束
        """
        self.cancel(room_id)
        task = asyncio.get_running_loop().create_task(self._run(room_id, tick))
        self._tasks[room_id] = task
        logger.info(f"Countdown started for room {room_id}")
        return task

    def cancel(self, room_id: str) -> bool:
        task = self._tasks.pop(room_id, None)
        if task is None or task.done():
            return False
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        if task is current:
            return False
        task.get_loop().call_soon_threadsafe(task.cancel)
        logger.info(f"Countdown cancelled for room {room_id}")
        return True

    def is_running(self, room_id: str) -> bool:
        task = self._tasks.get(room_id)
        return task is not None and not task.done()

    async def _run(self, room_id: str, tick: TickFn) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                if not await run_in_threadpool(tick):
                    break
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Countdown for room {room_id} crashed: {e}", exc_info=True)
        finally:
            if self._tasks.get(room_id) is asyncio.current_task():
                del self._tasks[room_id]


countdowns = CountdownRegistry()

"""
並發控制工具

提供 Database-level 的鎖定機制，防止並行的 session 互相覆蓋回合狀態

兩個工具：
- with_room_lock：對 Room 做 SELECT ... FOR UPDATE（PostgreSQL；SQLite 上
  是 no-op，SQLite 本來就讓寫入者排隊）
- compare_and_set_room：只有一個呼叫者會贏的單一條件式 UPDATE，
  用在 Open -> Locked 轉換與結算認領
"""
from sqlalchemy import update
from sqlalchemy.orm import Session, Query

from models import Room


def with_room_lock(room_id: str, db: Session) -> Query:
    """
    鎖定一個 Room（行級鎖）

    使用場景：
    - 讀取回合狀態，並在同一個 transaction 內寫回
    - 不能與結算交錯的 Host 動作

    範例：
        room = with_room_lock(room_id, db).first()
        if not room:
            raise UnknownRoom(room_id)
        room.phase = RoundPhase.OPEN

    返回：
        Query object（需要呼叫 .first() 或 .one() 來取得結果）

    注意：
        - nowait=False 表示如果鎖被佔用，會等待
        - 必須在 transaction 內使用
    """
    return db.query(Room).filter(
        Room.id == room_id
    ).with_for_update(nowait=False)


def compare_and_set_room(db: Session, room_id: str, expected: dict, values: dict) -> bool:
    """
    只有在 Room 的欄位仍等於 `expected` 時才原子地更新

    範例：
        won = compare_and_set_room(
            db, room_id,
            expected={"phase": RoundPhase.OPEN, "round_number": 3},
            values={"phase": RoundPhase.LOCKED},
        )

    參數：
        db: SQLAlchemy Session
        room_id: 房間代碼
        expected: 欄位名稱 -> 必須相符的值
        values: 欄位名稱 -> 新值（可以是 SQL expression）

    返回：
        True 表示正是這次呼叫完成更新；False 表示其他寫入者先到
        （或房間不在預期的狀態）

    注意：
        - 不會 commit，由呼叫者的 transaction 決定
        - 會 expire session 內的 Room，之後讀到的是新值
    """
    db.flush()
    stmt = update(Room).where(Room.id == room_id)
    for column, value in expected.items():
        stmt = stmt.where(getattr(Room, column) == value)
    result = db.execute(stmt.values(**values).execution_options(synchronize_session=False))
    db.expire_all()
    return result.rowcount == 1

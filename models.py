"""
SQLAlchemy models

Gameplay 資料（Match / Team / MatchPlayer / RoundPlayer）屬於 Match 的建立者；
Shared* 只是對原始資料的 view/edit 授權，不複製任何 gameplay 資料。
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from database import Base


def utcnow() -> datetime:
    # SQLite 不保存時區，統一存 naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class WinCondition(str, enum.Enum):
    HIGHEST_SCORE = "Highest Score"
    LOWEST_SCORE = "Lowest Score"
    TARGET_SCORE = "Target Score"
    MANUAL = "Manual"


class RoundsScore(str, enum.Enum):
    AGGREGATE = "Aggregate"
    BEST_OF = "Best Of"
    MANUAL = "Manual"
    NONE = "None"


class RoundType(str, enum.Enum):
    NUMERIC = "Numeric"
    CHECKBOX = "Checkbox"


class Permission(str, enum.Enum):
    VIEW = "view"
    EDIT = "edit"


class ShareItemType(str, enum.Enum):
    GAME = "game"
    SCORESHEET = "scoresheet"
    MATCH = "match"
    PLAYER = "player"


class ShareRequestStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


# ============ 遊戲設定 ============

class Game(Base):
    __tablename__ = "games"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    created_by = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    scoresheets = relationship("Scoresheet", back_populates="game")
    matches = relationship("Match", back_populates="game")


class Scoresheet(Base):
    __tablename__ = "scoresheets"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False, default="Default")
    game_id = Column(Integer, ForeignKey("games.id"), nullable=True, index=True)
    created_by = Column(String, nullable=False)
    win_condition = Column(Enum(WinCondition), nullable=False, default=WinCondition.HIGHEST_SCORE)
    rounds_score = Column(Enum(RoundsScore), nullable=False, default=RoundsScore.AGGREGATE)
    is_coop = Column(Boolean, nullable=False, default=False)
    target_score = Column(Integer, nullable=False, default=0)
    # True 代表這是某場 Match 的快照，而不是 Game 上的範本
    is_match_snapshot = Column(Boolean, nullable=False, default=False)

    game = relationship("Game", back_populates="scoresheets")
    rounds = relationship("Round", back_populates="scoresheet", order_by="Round.order")


class Round(Base):
    __tablename__ = "rounds"

    id = Column(Integer, primary_key=True)
    scoresheet_id = Column(Integer, ForeignKey("scoresheets.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    type = Column(Enum(RoundType), nullable=False, default=RoundType.NUMERIC)
    # Checkbox 回合勾選時獲得的分數
    score = Column(Integer, nullable=False, default=0)
    order = Column(Integer, nullable=False)

    scoresheet = relationship("Scoresheet", back_populates="rounds")


# ============ 對局 ============

class Player(Base):
    __tablename__ = "players"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    created_by = Column(String, nullable=False, index=True)


class Match(Base):
    __tablename__ = "matches"

    id = Column(Integer, primary_key=True)
    name = Column(String, nullable=False)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False, index=True)
    scoresheet_id = Column(Integer, ForeignKey("scoresheets.id"), nullable=False)
    created_by = Column(String, nullable=False, index=True)
    date = Column(DateTime, default=utcnow, nullable=False)

    # Timer 狀態：running = True 時 start_time 一定有值
    duration = Column(Integer, nullable=False, default=0)
    running = Column(Boolean, nullable=False, default=False)
    start_time = Column(DateTime, nullable=True)
    end_time = Column(DateTime, nullable=True)
    finished = Column(Boolean, nullable=False, default=False)

    game = relationship("Game", back_populates="matches")
    scoresheet = relationship("Scoresheet")
    teams = relationship("Team", back_populates="match")
    match_players = relationship("MatchPlayer", back_populates="match", order_by="MatchPlayer.id")


class Team(Base):
    __tablename__ = "teams"

    id = Column(Integer, primary_key=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False, index=True)
    name = Column(String, nullable=False)

    match = relationship("Match", back_populates="teams")
    members = relationship("MatchPlayer", back_populates="team")


class MatchPlayer(Base):
    __tablename__ = "match_players"

    id = Column(Integer, primary_key=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False, index=True)
    player_id = Column(Integer, ForeignKey("players.id"), nullable=False)
    team_id = Column(Integer, ForeignKey("teams.id"), nullable=True, index=True)
    score = Column(Float, nullable=True)
    placement = Column(Integer, nullable=True)
    winner = Column(Boolean, nullable=False, default=False)

    match = relationship("Match", back_populates="match_players")
    player = relationship("Player")
    team = relationship("Team", back_populates="members")
    round_players = relationship("RoundPlayer", back_populates="match_player")


class RoundPlayer(Base):
    __tablename__ = "round_players"

    id = Column(Integer, primary_key=True)
    match_player_id = Column(Integer, ForeignKey("match_players.id"), nullable=False, index=True)
    round_id = Column(Integer, ForeignKey("rounds.id"), nullable=False)
    score = Column(Float, nullable=True)

    __table_args__ = (
        UniqueConstraint("match_player_id", "round_id", name="uq_round_player"),
    )

    match_player = relationship("MatchPlayer", back_populates="round_players")
    round = relationship("Round")


# ============ 分享（授權） ============

class SharedGame(Base):
    __tablename__ = "shared_games"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    shared_with_id = Column(String, nullable=False, index=True)
    game_id = Column(Integer, ForeignKey("games.id"), nullable=False)
    # 接收者把分享的遊戲對應到自己的本地遊戲
    linked_game_id = Column(Integer, ForeignKey("games.id"), nullable=True)
    permission = Column(Enum(Permission), nullable=False, default=Permission.VIEW)

    __table_args__ = (
        UniqueConstraint("game_id", "shared_with_id", name="uq_shared_game"),
    )


class SharedScoresheet(Base):
    __tablename__ = "shared_scoresheets"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    shared_with_id = Column(String, nullable=False, index=True)
    scoresheet_id = Column(Integer, ForeignKey("scoresheets.id"), nullable=False)
    shared_game_id = Column(Integer, ForeignKey("shared_games.id"), nullable=True)
    permission = Column(Enum(Permission), nullable=False, default=Permission.VIEW)

    __table_args__ = (
        UniqueConstraint("scoresheet_id", "shared_with_id", name="uq_shared_scoresheet"),
    )


class SharedPlayer(Base):
    __tablename__ = "shared_players"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    shared_with_id = Column(String, nullable=False, index=True)
    player_id = Column(Integer, ForeignKey("players.id"), nullable=False)
    # 接收者把分享的玩家對應到自己的本地玩家
    linked_player_id = Column(Integer, ForeignKey("players.id"), nullable=True)
    permission = Column(Enum(Permission), nullable=False, default=Permission.VIEW)

    __table_args__ = (
        UniqueConstraint("player_id", "shared_with_id", name="uq_shared_player"),
    )


class SharedMatch(Base):
    __tablename__ = "shared_matches"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    shared_with_id = Column(String, nullable=False, index=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False)
    shared_game_id = Column(Integer, ForeignKey("shared_games.id"), nullable=True)
    permission = Column(Enum(Permission), nullable=False, default=Permission.VIEW)

    __table_args__ = (
        UniqueConstraint("match_id", "shared_with_id", name="uq_shared_match"),
    )

    shared_match_players = relationship("SharedMatchPlayer", back_populates="shared_match")


class SharedMatchPlayer(Base):
    __tablename__ = "shared_match_players"

    id = Column(Integer, primary_key=True)
    shared_match_id = Column(Integer, ForeignKey("shared_matches.id"), nullable=False, index=True)
    match_player_id = Column(Integer, ForeignKey("match_players.id"), nullable=False)
    shared_player_id = Column(Integer, ForeignKey("shared_players.id"), nullable=True)
    # None 代表沿用 SharedMatch.permission
    permission = Column(Enum(Permission), nullable=True)

    __table_args__ = (
        UniqueConstraint("shared_match_id", "match_player_id", name="uq_shared_match_player"),
    )

    shared_match = relationship("SharedMatch", back_populates="shared_match_players")
    shared_player = relationship("SharedPlayer")


class ShareRequest(Base):
    __tablename__ = "share_requests"

    id = Column(Integer, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    shared_with_id = Column(String, nullable=False, index=True)
    item_type = Column(Enum(ShareItemType), nullable=False)
    item_id = Column(Integer, nullable=False)
    permission = Column(Enum(Permission), nullable=False, default=Permission.VIEW)
    status = Column(Enum(ShareRequestStatus), nullable=False, default=ShareRequestStatus.PENDING)
    parent_id = Column(Integer, ForeignKey("share_requests.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    children = relationship("ShareRequest")


# ============ Event Log ============

class MatchEvent(Base):
    __tablename__ = "match_events"

    id = Column(Integer, primary_key=True)
    match_id = Column(Integer, ForeignKey("matches.id"), nullable=False, index=True)
    event_type = Column(String, nullable=False)
    actor_id = Column(String, nullable=False)
    data = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime, default=utcnow, nullable=False)

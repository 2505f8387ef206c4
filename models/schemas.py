#Description: Pydantic schemas for candles, signals, positions, orders, trades, account and advisory payloads.

from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

TradingMode = Literal["spot", "futures"]
Direction = Literal["long", "short"]
OrderType = Literal["market", "limit", "stop_market", "take_profit_market"]
OrderStatus = Literal["pending", "filled", "cancelled", "expired"]
CloseReason = Literal["manual", "stop_loss", "take_profit", "trailing_stop", "liquidation"]
SignalType = Literal[
    "golden_cross", "death_cross",
    "rsi_oversold", "rsi_overbought",
    "macd_bullish", "macd_bearish",
    "bb_breakout_up", "bb_breakout_down",
    "volume_surge",
]
DecisionAction = Literal["open", "close_and_open", "skip"]
RiskLevel = Literal["low", "medium", "high", "extreme"]


class Candle(BaseModel):
    time: int  # unix seconds, candle open time
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


class IndicatorSnapshot(BaseModel):
    ema7: float
    ema25: float
    rsi: float
    macd: float = 0.0
    macd_signal: float = 0.0
    bb_upper: float = 0.0
    bb_middle: float = 0.0
    bb_lower: float = 0.0
    atr: float = 0.0
    volume_ratio: float = 1.0


class AiAnalysis(BaseModel):
    """Advisory recommendation. Field aliases match the JSON the model is asked to return."""
    model_config = ConfigDict(populate_by_name=True)

    direction: Literal["long", "short", "hold"]
    confidence: float = Field(ge=1, le=10)
    entry_price: float = Field(default=0.0, alias="entryPrice")
    stop_loss: float = Field(default=0.0, alias="stopLoss")
    take_profit: float = Field(default=0.0, alias="takeProfit")
    reasoning: str = ""
    confluence: Optional[int] = Field(default=None, ge=0, le=5)
    risk_reward: Optional[float] = Field(default=None, alias="riskReward")
    timeframe: Optional[Literal["short", "medium", "long"]] = None
    auto_traded: bool = Field(default=False, alias="autoTraded")
    decision_note: Optional[str] = Field(default=None, alias="decisionNote")
    decision_action: Optional[Literal["open", "close_and_open", "skip", "pending"]] = Field(
        default=None, alias="decisionAction")


class Signal(BaseModel):
    id: str
    symbol: str
    type: SignalType
    time: int
    price: float
    indicators: IndicatorSnapshot
    ai_analysis: Optional[AiAnalysis] = None


class Position(BaseModel):
    id: str
    symbol: str
    mode: TradingMode
    direction: Direction
    size: float  # margin in quote currency
    leverage: int
    entry_price: float
    mark_price: float
    liquidation_price: float  # 0 for spot
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trailing_stop: Optional[float] = None  # ATR reference used as the trailing step unit
    unrealized_pnl: float = 0.0
    unrealized_pnl_pct: float = 0.0
    open_time: int  # unix ms


class Order(BaseModel):
    id: str
    symbol: str
    mode: TradingMode
    type: OrderType
    direction: Direction
    price: Optional[float] = None
    trigger_price: Optional[float] = None
    size: float
    leverage: int
    status: OrderStatus = "pending"
    created_at: int
    filled_at: Optional[int] = None
    filled_price: Optional[float] = None
    position_id: Optional[str] = None


class Trade(BaseModel):
    id: str
    symbol: str
    mode: TradingMode
    direction: Direction
    entry_price: float
    exit_price: float
    size: float
    leverage: int
    realized_pnl: float
    realized_pnl_pct: float
    open_time: int
    close_time: int
    close_reason: CloseReason


class EquityPoint(BaseModel):
    time: int
    equity: float


class AccountInfo(BaseModel):
    balance: float
    equity: float
    used_margin: float = 0.0
    unrealized_pnl: float = 0.0
    total_deposited: float = 0.0
    total_withdrawn: float = 0.0
    equity_history: list[EquityPoint] = Field(default_factory=list)


class OpenPositionParams(BaseModel):
    symbol: str
    mode: TradingMode
    direction: Direction
    size: float
    leverage: int = 1
    entry_price: float
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trailing_stop: Optional[float] = None


class PlaceOrderParams(BaseModel):
    symbol: str
    mode: TradingMode
    type: OrderType
    direction: Direction
    price: Optional[float] = None
    trigger_price: Optional[float] = None
    size: float
    leverage: int = 1
    position_id: Optional[str] = None


class PositionClose(BaseModel):
    position_id: str
    exit_price: float
    reason: CloseReason


class OrderFill(BaseModel):
    order_id: str
    fill_price: float


class StopLossUpdate(BaseModel):
    position_id: str
    new_stop_loss: float


class TickResult(BaseModel):
    positions_to_close: list[PositionClose] = Field(default_factory=list)
    orders_to_fill: list[OrderFill] = Field(default_factory=list)
    stop_loss_updates: list[StopLossUpdate] = Field(default_factory=list)


class TradeDecision(BaseModel):
    action: DecisionAction
    note: str


class FearGreed(BaseModel):
    value: int = 50
    classification: str = "Neutral"
    timestamp: int = 0


class StrategyReport(BaseModel):
    id: str
    generated_at: int
    sentiment: Literal["bullish", "bearish", "neutral"] = "neutral"
    risk_level: RiskLevel = "medium"
    key_events: list[str] = Field(default_factory=list)
    macro_factors: str = ""
    trading_bias: str = ""
    summary: str = ""
    fear_greed: FearGreed = Field(default_factory=FearGreed)


class Preferences(BaseModel):
    trading_mode: TradingMode = "spot"
    selected_interval: str = "5m"
    selected_symbol: str = "BTCUSDT"
    selected_leverage: int = 10
    auto_trade_enabled: bool = True
    report_interval_min: int = 10
    strategy_report: Optional[StrategyReport] = None


class PersistedState(BaseModel):
    """Durable subset of the runtime state. Candles, mark prices and signals are rebuilt from the feed."""
    account: AccountInfo
    positions: list[Position] = Field(default_factory=list)
    orders: list[Order] = Field(default_factory=list)
    trades: list[Trade] = Field(default_factory=list)
    preferences: Preferences = Field(default_factory=Preferences)


class PortfolioState(BaseModel):
    """Read-only view of the ledger handed to the decision engine."""
    account: AccountInfo
    positions: list[Position] = Field(default_factory=list)
    trading_mode: TradingMode = "spot"
    strategy_report: Optional[StrategyReport] = None

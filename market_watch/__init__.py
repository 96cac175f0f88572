"""
Market Watch 行情信号服务
为上层请求处理器提供行情、新闻与信号计算的核心能力

架构分层：
  数据获取层 (Acquisition)  → 多数据提供商有序回退（行情 / 历史 / 新闻）
  缓存层     (Cache)        → Redis / MongoDB / 文件三级 TTL 缓存
  限流层     (RateLimit)    → 按客户端、按操作的滑动窗口限流
  处理层     (Processing)   → K 线标准化、日线聚合
  分析层     (Analysis)     → SMA / RSI / ATR 指标计算
  信号层     (Signals)      → 多弱信号混合的上涨概率与解释
"""

__version__ = "1.0.0"

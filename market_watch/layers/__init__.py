"""
数据流分层架构
  Layer 1 – Acquisition  : 多提供商有序回退获取（行情 / 历史 / 新闻）
  Layer 2 – Cache        : 按新鲜度判定的多级 TTL 缓存（Redis → MongoDB → 文件）
  RateLimit              : 按客户端与操作分桶的滑动窗口限流
  Layer 3 – Processing   : K 线清洗与 UTC 日线聚合
  Layer 4 – Analysis     : SMA / RSI / ATR 指标计算
  Signals                : 可解释的上涨概率混合
"""

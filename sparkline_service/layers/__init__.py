"""
Sparkline 数据流分层
  Layer 1 – Acquisition  : 上游历史 K 线拉取（限流重试）
  Layer 2 – Cache        : 两级缓存（内存 LRU → 持久化：MongoDB / Redis / 文件）
  Layer 3 – Processing   : K 线校验与收盘价序列整理
  编排                   : 批量拉取队列、可见性优先级、过期巡检、实时价合并
"""

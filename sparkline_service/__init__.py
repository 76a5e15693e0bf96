"""
Sparkline 缓存与后台拉取服务
为滚动列表中同时展示的数百个交易品种维护滚动 24 小时迷你走势图

架构分层：
  数据获取层 (Acquisition)  → 上游历史 K 线接口，429 限流时指数退避重试
  缓存层     (Cache)        → 内存 LRU（短 TTL） + 持久化（长 TTL，冷启动预热）
  处理层     (Processing)   → K 线校验、收盘价去重排序
  编排层     (Orchestrator) → 去重、分批、限并发的后台拉取，可见性优先，定时失效
"""

__version__ = "1.0.0"

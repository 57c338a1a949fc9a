"""
代理数据流分层架构
  Layer 1 – Validation : 请求参数校验
  Layer 2 – Cache      : 两级缓存（内存 → 磁盘）
  Layer 3 – Fixtures   : 只读夹具数据
  Layer 4 – Scheduler  : 上游调用串行调度
  Layer 5 – Upstream   : 上游客户端与响应分类
"""

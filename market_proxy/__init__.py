"""
Market-Data Proxy 行情数据缓存代理服务
为限流、不稳定的上游行情 API 提供读穿透缓存与多级降级

架构分层：
  校验层     (Validation) → 操作白名单 + 股票代码格式校验
  缓存层     (Cache)      → 内存 / 磁盘两级缓存
  夹具层     (Fixtures)   → 只读预置数据，最后兜底
  调度层     (Scheduler)  → 上游调用全局串行 + 最小间隔
  上游层     (Upstream)   → 网络调用、超时、响应分类
"""

__version__ = "1.0.0"

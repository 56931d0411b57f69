"""PPT 生成任务服务。"""

__version__ = "0.1.0"

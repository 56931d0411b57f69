"""任务生命周期模块。"""

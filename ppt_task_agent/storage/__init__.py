"""存储模块：任务 SQLite 存储与文件存储。"""

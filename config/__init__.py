"""运行配置。"""

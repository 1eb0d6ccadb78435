"""全局配置

数据库连接参数（DATABASE_URL / PG* / PG_POOL_*）由 db.postgres 在首次使用时读取。
"""

import os
from dotenv import load_dotenv

from utils import as_int_env, as_str_env

load_dotenv()

# ========================
# 保存的查询工具
# ========================
MCP_PG_DATA_DIR = as_str_env("MCP_PG_DATA_DIR", "./data")

# 核心工具开关: all(全部禁用) / management(仅禁用管理工具) / none(全部启用)
DISABLE_CORE_TOOLS = as_str_env("DISABLE_CORE_TOOLS", "none").lower()

# ========================
# MCP 传输
# ========================
MCP_TRANSPORT = as_str_env("MCP_TRANSPORT", "stdio")
MCP_HOST = as_str_env("MCP_HOST", "127.0.0.1")
MCP_PORT = as_int_env("MCP_PORT", 8000, min_value=1)

# ========================
# 日志配置
# ========================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

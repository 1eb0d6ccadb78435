"""MCP 工具：注册表、内置工具、保存查询工具。"""

"""PostgreSQL 访问层。"""

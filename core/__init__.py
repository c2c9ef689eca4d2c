"""
核心業務邏輯層

這個 package 包含所有核心業務邏輯，包括：
- Canonical Resolver：把 original / shared 定址收斂成同一筆資料，並解析權限
- Match Timer：對局計時的狀態機（start / pause / reset）
- Match Manager：分數修改、手動勝者、結束對局
- Locks：並發控制工具
"""

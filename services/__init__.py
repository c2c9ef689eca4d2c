"""
服務層

這個 package 包含純計算邏輯與輔助服務，不負責狀態轉換：
- ScoringService：最終分數、勝者、名次計算
- SharingService：分享授權與分享邀請
- EventService：對局事件紀錄
"""

"""生命週期引擎的 HTTP 藍圖。"""

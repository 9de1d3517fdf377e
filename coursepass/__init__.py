"""課程預約服務的訂單、付款與會籍生命週期引擎。"""

__version__ = "0.3.0"

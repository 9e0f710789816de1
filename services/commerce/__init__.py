"""Commerce Service — 注文処理と Flex 定期購入"""

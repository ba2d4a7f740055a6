"""
CSV 读写的共用部分（银行照合、EHR CSV 导入导出）。

parse_csv：RFC 4180（引号、字段内逗号、"" 转义、CRLF、引号内换行），
空行（全部单元格为空白）跳过，开头的 UTF-8 BOM 去掉。
单元格默认原样返回；strip=True 时去首尾空白（银行 CSV 用）。
EHR 的病历本文、住所等字段里的首尾空白是数据的一部分，不能去。
"""

import csv
import io

BOM = "\ufeff"


def decode_upload(raw: bytes | str) -> str:
    """上传文件 → str（UTF-8，容忍 BOM）。"""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8-sig")
    return raw.lstrip(BOM)


def parse_csv(text: str, strip: bool = False) -> list[list[str]]:
    if not text:
        return []
    reader = csv.reader(io.StringIO(text.lstrip(BOM), newline=""))
    rows = []
    for row in reader:
        if not any(cell.strip() for cell in row):
            continue
        rows.append([cell.strip() for cell in row] if strip else row)
    return rows


def write_csv(header: list[str], rows: list[list[str]]) -> str:
    """生成 CSV 文本（行尾 \\n，需要时加引号）。"""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(header)
    writer.writerows(rows)
    return buffer.getvalue()

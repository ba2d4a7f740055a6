"""
银行 CSV 解析 + 汇款人名称规范化。

CSV 列：[日付, 摘要（振込名義人）, 出金, 入金, 残高]，第一行是表头。
金额里的 "," 和 "円" 去掉再转整数；入金为 0 的行（包括只有出金的行）直接丢弃。
"""

import re
import unicodedata
from dataclasses import dataclass, field

from ..csvutil import parse_csv
from ..exceptions import ValidationError

# 半角片假名（含半角浊点/半浊点、长音、句读）
_HALFWIDTH_KANA_RE = re.compile(r"[\uff61-\uff9f]+")
_SPACES_RE = re.compile(r"[\s\u3000]+")
_AMOUNT_NOISE_RE = re.compile(r"[,円]")

MIN_COLUMNS = 4


def to_fullwidth_katakana(text: str) -> str:
    """只把半角片假名转成全角；汉字、平假名、英数保持原样。"""
    return _HALFWIDTH_KANA_RE.sub(lambda m: unicodedata.normalize("NFKC", m.group(0)), text)


def normalize_payer_name(name: str) -> str:
    """
    "ﾀﾅｶ ﾀﾛｳ" / "タナカ　タロウ" / '"タナカ タロウ"' → "タナカタロウ"
    """
    text = (name or "").replace('"', "").replace("'", "")
    text = to_fullwidth_katakana(text)
    return _SPACES_RE.sub("", text)


def parse_amount(value: str) -> int:
    cleaned = _AMOUNT_NOISE_RE.sub("", value or "").strip()
    try:
        return int(cleaned)
    except ValueError:
        return 0


@dataclass
class DepositRow:
    date: str
    description: str
    amount: int
    normalized_name: str = field(init=False)

    def __post_init__(self):
        self.normalized_name = normalize_payer_name(self.description)

    def to_dict(self) -> dict:
        return {"date": self.date, "description": self.description, "amount": self.amount}


def parse_bank_csv(text: str) -> list[DepositRow]:
    """
    Raises:
        ValidationError: 文件为空 / 没有任何入金行
    """
    rows = parse_csv(text, strip=True)
    if not rows:
        raise ValidationError("CSVファイルが空です", code="EMPTY_CSV")

    deposits = []
    for cols in rows[1:]:
        if len(cols) < MIN_COLUMNS:
            continue
        amount = parse_amount(cols[3])
        if amount <= 0:
            continue
        deposits.append(DepositRow(date=cols[0], description=cols[1], amount=amount))

    if not deposits:
        raise ValidationError(
            "CSVに入金データが見つかりませんでした",
            code="NO_DEPOSITS",
            detail="入金額が0より大きい行がありません",
        )
    return deposits

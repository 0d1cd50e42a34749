from __future__ import annotations

from typing import Iterable

from .errors import ErrorType

COMMITTEE_NAMES = [
    "內政委員會",
    "外交及國防委員會",
    "經濟委員會",
    "財政委員會",
    "教育及文化委員會",
    "交通委員會",
    "司法及法制委員會",
    "社會福利及衛生環境委員會",
    "程序委員會",
    "紀律委員會",
    "經費稽核委員會",
    "修憲委員會",
]

_OUTPUT_RULES = """**輸出要求：**
1. 語言：台灣繁體中文。
2. 所有內容必須嚴格基於提供的議事記錄文本，不得臆測。
3. 數值一律使用阿拉伯數字，例如「第 35 條」、「113 年」、「50 億元」。
4. 忽略所有類似 "[image: imageXXX.jpg]" 的圖片佔位符。
5. 可為 null 的欄位若無資訊請設為 null；陣列欄位若無內容可為 null 或 []。
6. 若文本僅為程序性宣告而無實質討論，輸出：
   {"summary_title": "程序性內容", "overall_summary_sentence": "本次記錄主要為程序性內容，無實質討論摘要。", "committee_name": null, "agenda_items": []}
"""


def should_skip_analysis(
    category_code: int | None,
    allowed: Iterable[int],
    excluded: Iterable[int] = (),
) -> bool:
    """Excluded codes always skip; a non-empty allow list skips everything outside it."""
    allowed = list(allowed)
    if category_code is not None and category_code in set(excluded):
        return True
    if allowed and category_code not in allowed:
        return True
    return False


def skip_reason(category_code: int | None) -> str:
    return f"Analysis skipped: content category_code {category_code} is not analyzed."


def build_regular_prompt(text: str, *, truncated: bool) -> str:
    truncation_note = (
        "\n**重要提示：原始文本過長，以下內容已被截斷。請基於現有內容分析並盡可能提取核心資訊。**\n"
        if truncated
        else ""
    )
    return f"""請扮演立法院議事記錄的專業分析師。仔細閱讀以下某委員會的議事記錄，並以 JSON 輸出分析報告。
{truncation_note}
**議事記錄文本：**
```text
{text}
```

**分析欄位：**
1. summary_title（字串）：代表全文核心焦點的摘要標題，50 字以內。
2. overall_summary_sentence（字串）：涵蓋主要內容、法案全名或關鍵議題與重要結論的總結，約 100 至 150 字。
3. committee_name（字串陣列或 null）：{_committee_instruction()}
4. agenda_items（物件陣列）：列出所有主要議程項目，每項包含
   - item_title：核心法案名稱與議程編號，省略提案人姓名。
   - core_issue：核心問題、背景或主要討論內容，多點時分列為陣列元素。
   - controversy：主要爭議點及各方理由，無明顯爭議則為 null。
   - legislator_speakers：主要質詢或提案的立法委員，含 speaker_name 與 speaker_viewpoint。
   - respondent_speakers：主要答詢的政府官員或相關代表，含 speaker_name 與 speaker_viewpoint。
   - result_status_next：最終處理結果、審查進度或下一步行動。

{_OUTPUT_RULES}
請開始分析。
"""


def build_shortened_prompt(
    text: str,
    *,
    truncated: bool,
    previous_error: str | None = None,
    previous_error_type: ErrorType | None = None,
) -> str:
    """Reduced prompt for the second tier. Mentions why the full attempt failed."""
    failure_note = ""
    if previous_error or previous_error_type:
        kind = previous_error_type.value if previous_error_type else "UNKNOWN"
        failure_note = (
            f"\n先前的完整分析失敗（{kind}）：{(previous_error or '').strip()[:300]}\n"
            "本次請產出精簡版分析，控制輸出長度。\n"
        )
    truncation_note = "\n（注意：以下文本已被截斷，僅涵蓋記錄前段。）\n" if truncated else ""
    return f"""請以 JSON 輸出以下立法院委員會議事記錄的精簡分析。{failure_note}{truncation_note}
**議事記錄文本：**
```text
{text}
```

**分析欄位（精簡）：**
1. summary_title：50 字以內的摘要標題。
2. overall_summary_sentence：100 字以內的總結。
3. committee_name：{_committee_instruction()}
4. agenda_items：僅列出最重要的議程項目，每項只需 item_title、core_issue（至多 3 點）與 result_status_next；其餘欄位設為 null。

{_OUTPUT_RULES}
"""


def _committee_instruction() -> str:
    return (
        "從以下常設委員會中選擇最符合的一個或多個：" + "、".join(COMMITTEE_NAMES) + "。"
        "聯席會議請列出所有相關委員會，主導委員會放在第一個；無法判斷則設為 null 或 []。"
    )

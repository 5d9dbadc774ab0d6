"""
Query Translator for MedEvidence

Turns a clinical question into English PubMed keywords:
1. ASCII-only queries pass through unchanged
2. Otherwise the LLM translates (structured TranslationOutput)
3. On LLM failure, a Japanese->English medical term table is applied and
   question particles are stripped

Translation never raises; the worst case is the original text.
"""

import logging
import re
from dataclasses import dataclass
from typing import Literal

from medevidence.llm.ollama_client import LLMError, OllamaClient
from medevidence.llm.schemas import TranslationOutput

logger = logging.getLogger(__name__)

# Letters, digits, whitespace and the punctuation clinicians type in English queries
SEARCH_READY_PATTERN = re.compile(r"^[A-Za-z0-9\s\-_.,;:'\"()\[\]/+&%?!<>=*]*$")

QUESTION_MARKS = re.compile(r"[？?]")
PARTICLES = re.compile(r"[のはをにがでと]")
WHITESPACE = re.compile(r"\s+")

TRANSLATION_SYSTEM_PROMPT = (
    "You translate medical search queries for PubMed. Convert the user's query "
    "(usually Japanese) into English medical keywords, not a natural-language "
    "question. Use standard English medical terminology, omit articles and "
    "prepositions, and keep only the terms that matter for the search. "
    'Respond as JSON: {"translated_query": "<keywords>"}'
)

MEDICAL_TERMS: dict[str, str] = {
    # Cardiovascular
    "糖尿病": "diabetes mellitus",
    "高血圧": "hypertension",
    "心筋梗塞": "myocardial infarction STEMI NSTEMI",
    "脳梗塞": "cerebral infarction stroke",
    "冠動脈バイパス術": "coronary artery bypass graft CABG",
    "バイパス術": "bypass surgery CABG",
    "経皮的冠動脈インターベンション": "percutaneous coronary intervention PCI",
    "三枝病変": "three vessel disease multivessel",
    "左主幹部": "left main coronary artery LMCA",
    "左前下行枝": "left anterior descending LAD",
    "右冠動脈": "right coronary artery RCA",
    "回旋枝": "left circumflex LCX",
    "狭窄": "stenosis",
    "冠動脈": "coronary artery",
    "左室機能": "left ventricular function LVEF",
    "駆出率": "ejection fraction EF",
    "狭心症": "angina pectoris",
    "心不全": "heart failure HFrEF HFpEF",
    "急性心不全": "acute heart failure",
    "慢性心不全": "chronic heart failure",
    "心房細動": "atrial fibrillation AF",
    "心室頻拍": "ventricular tachycardia VT",
    "心室細動": "ventricular fibrillation VF",
    # General clinical terms
    "適応": "indication criteria",
    "禁忌": "contraindication",
    "治療": "treatment therapy",
    "治療薬": "therapeutic drugs medications",
    "薬物療法": "drug therapy pharmacotherapy",
    "手術": "surgery surgical intervention",
    "予後": "prognosis outcome",
    "診断": "diagnosis",
    "症状": "symptoms clinical presentation",
    "副作用": "side effects adverse effects",
    "効果": "efficacy effectiveness",
    "長期": "long-term",
    "短期": "short-term",
    "予防": "prevention prophylaxis",
    "合併症": "complications",
    "生存率": "survival rate",
    "死亡率": "mortality",
    "臨床試験": "clinical trial RCT",
    "ガイドライン": "guidelines recommendation",
    "薬": "drug medication",
    "薬剤": "medication drug",
    "投与": "administration",
    "用量": "dosage dose",
    # Heart failure drugs
    "ACE阻害薬": "ace inhibitor",
    "β遮断薬": "beta blocker",
    "利尿薬": "diuretic",
    "ジギタリス": "digitalis",
    "ドブタミン": "dobutamine",
    "ドパミン": "dopamine",
    "ノルアドレナリン": "noradrenaline norepinephrine",
    "フロセミド": "furosemide",
    "スピロノラクトン": "spironolactone",
    # Oncology
    "癌": "cancer carcinoma",
    "がん": "cancer malignancy",
    "食道癌": "esophageal cancer",
    "胃癌": "gastric cancer",
    "肺癌": "lung cancer",
    "乳癌": "breast cancer",
    "大腸癌": "colorectal cancer",
    "肝癌": "hepatocellular carcinoma HCC",
    "膵癌": "pancreatic cancer",
    "前立腺癌": "prostate cancer",
    "化学療法": "chemotherapy",
    "放射線療法": "radiotherapy radiation therapy",
    "免疫療法": "immunotherapy",
    "分子標的治療": "molecular targeted therapy",
    # Other
    "血圧": "blood pressure BP",
    "血糖": "blood glucose",
    "ヘモグロビンA1c": "HbA1c glycated hemoglobin",
    "コレステロール": "cholesterol LDL HDL",
    "腎機能": "renal function eGFR",
    "肝機能": "liver function",
    "炎症": "inflammation",
    "感染": "infection",
    "抗生物質": "antibiotics",
    "抗凝固": "anticoagulation",
    "抗血小板": "antiplatelet",
}

# Longest first so compound terms (急性心不全) win over their parts (心不全)
_TERMS_BY_LENGTH = sorted(MEDICAL_TERMS.items(), key=lambda item: len(item[0]), reverse=True)


@dataclass(frozen=True)
class TranslationResult:
    text: str
    degraded: bool = False
    method: Literal["passthrough", "llm", "dictionary", "original"] = "passthrough"


def is_search_ready(text: str) -> bool:
    """True when ``text`` is already ASCII keywords PubMed can use as-is."""
    return bool(SEARCH_READY_PATTERN.match(text))


def dictionary_translate(text: str) -> str:
    """Keyword-for-keyword substitution with particle stripping.

    Returns the original text when nothing usable remains.
    """
    translated = text
    for japanese, english in _TERMS_BY_LENGTH:
        if japanese in translated:
            translated = translated.replace(japanese, f" {english} ")

    translated = QUESTION_MARKS.sub("", translated)
    translated = PARTICLES.sub(" ", translated)
    translated = WHITESPACE.sub(" ", translated).strip()
    return translated or text


class QueryTranslator:
    """Converts queries to search-ready English keywords."""

    def __init__(self, llm_client: OllamaClient | None = None) -> None:
        self.llm_client = llm_client

    async def translate(self, text: str) -> TranslationResult:
        text = text.strip()
        if not text or is_search_ready(text):
            return TranslationResult(text=text)

        if self.llm_client is not None:
            try:
                output = await self.llm_client.complete(
                    system_prompt=TRANSLATION_SYSTEM_PROMPT,
                    messages=[{"role": "user", "content": text}],
                    response_model=TranslationOutput,
                )
                logger.info("Translated query: '%s' -> '%s'", text, output.translated_query)
                return TranslationResult(text=output.translated_query, method="llm")
            except LLMError as e:
                logger.warning("LLM translation failed, using term table: %s", e)
            except Exception as e:
                logger.warning("Unexpected translation error, using term table: %s", e)

        fallback = dictionary_translate(text)
        method: Literal["dictionary", "original"] = "dictionary" if fallback != text else "original"
        logger.info("Dictionary translation: '%s' -> '%s'", text, fallback)
        return TranslationResult(text=fallback, degraded=True, method=method)

"""Statistical analysis and AI prompt nodes."""

from __future__ import annotations

import json
import math
from typing import Any

from ..errors import ValidationError
from ..types import Node
from .rows import Row, extract_rows, to_number

AI_ANALYSIS_DESCRIPTION = "Computes column statistics, outliers and trends, optionally summarised by AI."
ASK_AI_DESCRIPTION = "Sends a prompt with the upstream data to an AI provider."

DEFAULT_PROVIDER = "openai"
DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-haiku-20240307",
    "deepseek": "deepseek-chat",
}
DEFAULT_SYSTEM_MESSAGE = "You are a helpful assistant."
NUMERIC_SHARE = 0.7
OUTLIER_THRESHOLD = 2.0
PROMPT_ROW_LIMIT = 50


def mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def std_dev(values: list[float], average: float) -> float:
    if not values:
        return 0.0
    return math.sqrt(mean([(value - average) ** 2 for value in values]))


def find_outliers(values: list[float], average: float, deviation: float) -> list[float]:
    return [value for value in values if abs(value - average) > OUTLIER_THRESHOLD * deviation]


def find_pattern(values: list[float]) -> dict[str, Any]:
    increasing = decreasing = stable = True
    for previous, current in zip(values, values[1:]):
        if current <= previous:
            increasing = False
        if current >= previous:
            decreasing = False
        if abs(current - previous) > 0.1 * abs(previous):
            stable = False
    if increasing:
        return {"pattern": "increasing", "confidence": 0.9}
    if decreasing:
        return {"pattern": "decreasing", "confidence": 0.9}
    if stable:
        return {"pattern": "stable", "confidence": 0.9}
    return {"pattern": "mixed", "confidence": 0.5}


def numeric_columns(rows: list[Row]) -> dict[str, list[float]]:
    """Columns where more than 70% of the rows hold a number."""

    if not rows:
        return {}
    columns: dict[str, list[float]] = {}
    for key in rows[0]:
        values = [to_number(row.get(key)) for row in rows]
        numbers = [value for value in values if value is not None]
        if len(numbers) > len(rows) * NUMERIC_SHARE:
            columns[key] = numbers
    return columns


def _insights(analysis_type: str, statistics: dict[str, dict[str, Any]], columns: dict[str, list[float]]):
    insights = []
    for column, values in columns.items():
        stats = statistics[column]
        if analysis_type == "trends":
            pattern = find_pattern(values)
            insights.append(
                {
                    "column": column,
                    "insight": f"Column {column} shows a {pattern['pattern']} trend "
                    f"with {pattern['confidence'] * 100:.0f}% confidence.",
                }
            )
        elif analysis_type == "outliers":
            outliers = stats.get("outliers") or find_outliers(values, stats["mean"], stats["stdDev"])
            if outliers:
                insights.append(
                    {"column": column, "insight": f"Found {len(outliers)} outliers in column {column}.", "outliers": outliers}
                )
        elif analysis_type == "forecast":
            pattern = find_pattern(values)["pattern"]
            forecast = {
                "increasing": "likely to continue increasing",
                "decreasing": "likely to continue decreasing",
            }.get(pattern, "stable")
            insights.append({"column": column, "insight": f"Column {column} is {forecast} based on historical trend."})
        else:
            insights.append(
                {
                    "column": column,
                    "insight": f"Column {column} has mean {stats['mean']:.2f} "
                    f"with standard deviation {stats['stdDev']:.2f}.",
                }
            )
    return insights


def ai_analysis(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    config = node.config
    rows = extract_rows(inputs, required=False)
    if not rows:
        return {"data": [], "analysis": {"message": "No data to analyze", "status": "warning"}}

    columns = numeric_columns(rows)
    if not columns:
        return {"data": rows, "analysis": {"message": "No numeric columns found for analysis", "status": "warning"}}

    options = config.get("analysisOptions") or {}
    statistics: dict[str, dict[str, Any]] = {}
    for column, values in columns.items():
        average = mean(values)
        deviation = std_dev(values, average)
        stats: dict[str, Any] = {
            "mean": average,
            "stdDev": deviation,
            "min": min(values),
            "max": max(values),
            "count": len(values),
        }
        if options.get("detectOutliers"):
            stats["outliers"] = find_outliers(values, average, deviation)
        if options.get("findPatterns"):
            stats["pattern"] = find_pattern(values)
        statistics[column] = stats

    analysis_type = config.get("analysisType", "general")
    analysis: dict[str, Any] = {
        "statistics": statistics,
        "insights": _insights(analysis_type, statistics, columns),
        "summary": f"Analyzed {len(columns)} numeric columns across {len(rows)} records.",
        "status": "success",
    }

    if config.get("summarize"):
        provider = config.get("provider", DEFAULT_PROVIDER)
        prompt = (
            "Summarise the following column statistics for a business user:\n"
            + json.dumps(statistics, default=str)
        )
        analysis["aiSummary"] = context.require_ai().complete(
            provider,
            config.get("model") or DEFAULT_MODELS.get(provider, ""),
            config.get("systemMessage") or DEFAULT_SYSTEM_MESSAGE,
            prompt,
        )
    return {"data": rows, "analysis": analysis}


def build_prompt(template: str, inputs: dict[str, Any]) -> str:
    rows = extract_rows(inputs, required=False)
    payload = json.dumps(rows[:PROMPT_ROW_LIMIT] if rows else inputs, default=str)
    if "{{input}}" in template:
        return template.replace("{{input}}", payload)
    if not rows and not inputs:
        return template
    return f"{template}\n\nData:\n{payload}"


def ask_ai(node: Node, inputs: dict[str, Any], context) -> dict[str, Any]:
    config = node.config
    provider = config.get("provider") or config.get("aiProvider") or DEFAULT_PROVIDER
    if provider not in DEFAULT_MODELS:
        raise ValidationError(f"unsupported AI provider: {provider}")
    model = config.get("model") or config.get("modelName") or DEFAULT_MODELS[provider]
    prompt = build_prompt(str(config["prompt"]), inputs)
    response = context.require_ai().complete(
        provider, model, config.get("systemMessage") or DEFAULT_SYSTEM_MESSAGE, prompt
    )
    context.emit("info", f"received {len(response)} characters from {provider}/{model}")
    return {"response": response, "provider": provider, "model": model}

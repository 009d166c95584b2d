from typing import Any, Dict, Optional

from log.system_log import system_logger
from security.config import BLOCKED_USER_AGENTS
from security.decision import Decision, RequestContext, allow, challenge, reject
from security.events import SecurityEventType, ThreatLevel
from security.rate_limiter import bucket_for_score
from security.reputation import LOW_REPUTATION, blocked_minutes

"""
Các bước kiểm tra dùng trạng thái của từng thành phần (uy tín, bot, hành vi, rate limit).
Mỗi hàm nhận (ctx, pipeline) và trả về Decision; pipeline giữ các thành phần dùng chung.
"""


def block(ctx: RequestContext, pipeline, decision: Decision, event_type: SecurityEventType,
          level: ThreatLevel, violation: Optional[str] = None,
          details: Optional[Dict[str, Any]] = None) -> Decision:
    """
    Ghi sự kiện bảo mật (và trừ điểm uy tín nếu có violation) rồi trả lại decision
    """
    info = {"code": decision.code}
    info.update(details or {})
    pipeline.events.record(
        event_type, level, ctx.identifier, ctx.path, ctx.method, ctx.now,
        details=info, blocked=True, user_agent=ctx.user_agent or None, user_id=ctx.user_id,
    )
    if violation:
        pipeline.reputation.report_violation(ctx.identifier, violation, ctx.now)
    return decision


def check_country(ctx: RequestContext, pipeline) -> Decision:
    country = ctx.identity.country
    if not country or country not in pipeline.config.blocked_countries:
        return allow()
    system_logger.info(f"Chặn request từ quốc gia {country} (IP: {ctx.identifier})")
    return block(
        ctx, pipeline,
        reject(403, "COUNTRY_BLOCKED", "Access denied from your country"),
        SecurityEventType.IP_BLOCKED, ThreatLevel.LOW, details={"country": country},
    )


def check_reputation(ctx: RequestContext, pipeline) -> Decision:
    """
    IP đang bị chặn do điểm uy tín thấp -> 403, retryAfter tính bằng phút
    """
    remaining = pipeline.reputation.block_remaining(ctx.identifier, ctx.now)
    if remaining is not None:
        return block(
            ctx, pipeline,
            reject(403, "IP_BLOCKED", "Your IP has been temporarily blocked due to suspicious activity",
                   retry_after=blocked_minutes(remaining)),
            SecurityEventType.IP_BLOCKED, ThreatLevel.MEDIUM,
        )

    score = pipeline.reputation.score(ctx.identifier, ctx.now)
    ctx.annotations["reputation"] = score
    if score < LOW_REPUTATION:
        system_logger.info(f"Request từ IP uy tín thấp: ip={ctx.identifier} score={score} path={ctx.path}")
    return allow()


def check_blocklist(ctx: RequestContext, pipeline) -> Decision:
    if ctx.identifier not in pipeline.config.blocked_ips:
        return allow()
    return block(
        ctx, pipeline,
        reject(403, "IP_BLOCKED", "Access denied"),
        SecurityEventType.IP_BLOCKED, ThreatLevel.HIGH, details={"source": "blocklist"},
    )


def check_user_agent(ctx: RequestContext, pipeline) -> Decision:
    user_agent = ctx.user_agent.lower()
    tool = next((name for name in BLOCKED_USER_AGENTS if name in user_agent), None)
    if tool is None:
        return allow()
    system_logger.warning(f"Chặn User-Agent công cụ tấn công: ip={ctx.identifier} ua={ctx.user_agent}")
    return block(
        ctx, pipeline,
        reject(403, "USER_AGENT_BLOCKED", "Access denied"),
        SecurityEventType.SUSPICIOUS_ACTIVITY, ThreatLevel.HIGH, "attack_attempt", {"tool": tool},
    )


def check_bot(ctx: RequestContext, pipeline) -> Decision:
    verdict = pipeline.bot.classify(ctx.headers, ctx.identifier, ctx.now)
    pipeline.bot.remember(verdict.fingerprint, ctx.now)
    ctx.annotations["bot"] = verdict

    if not verdict.suspected and not verdict.blocked:
        return allow()

    system_logger.warning(
        f"Nghi ngờ bot: ip={ctx.identifier} score={verdict.score} indicators={list(verdict.indicators)} path={ctx.path}"
    )
    details = {"score": verdict.score, "indicators": list(verdict.indicators)}
    if verdict.suspected:
        # Chỉ yêu cầu xác minh, không trừ điểm uy tín
        return block(
            ctx, pipeline,
            challenge("BOT_SUSPECTED", "Security verification required"),
            SecurityEventType.BOT_DETECTED, ThreatLevel.MEDIUM, details=details,
        )
    return block(
        ctx, pipeline,
        reject(403, "BOT_DETECTED", "Access denied"),
        SecurityEventType.BOT_DETECTED, ThreatLevel.HIGH, "bot_detected", details,
    )


def check_behavior(ctx: RequestContext, pipeline) -> Decision:
    if pipeline.behavior.track(ctx.identifier, ctx.path, ctx.method, ctx.now):
        return allow()
    record = pipeline.behavior.get(ctx.identifier)
    details = {"score": record.anomaly_score, "requests": record.request_count} if record else {}
    return block(
        ctx, pipeline,
        reject(403, "ANOMALY_DETECTED", "Suspicious activity detected"),
        SecurityEventType.ANOMALY_DETECTED, ThreatLevel.HIGH, "suspicious_activity", details,
    )


def check_adaptive_rate(ctx: RequestContext, pipeline) -> Decision:
    """
    Token bucket theo bậc uy tín, chỉ áp dụng cho các path dưới /api/
    """
    if not ctx.path.startswith(pipeline.config.adaptive_path_prefix):
        return allow()

    score = ctx.annotations.get("reputation")
    if score is None:
        score = pipeline.reputation.score(ctx.identifier, ctx.now)
    capacity, refill_rate = bucket_for_score(score)

    allowed, retry_after = pipeline.limiter.try_consume(ctx.identifier, capacity, refill_rate, ctx.now)
    if allowed:
        return allow()
    # Vi phạm đã được limiter báo cho bộ chấm điểm uy tín
    return block(
        ctx, pipeline,
        reject(429, "RATE_LIMIT_EXCEEDED", "Too many requests", retry_after=retry_after),
        SecurityEventType.RATE_LIMIT_EXCEEDED, ThreatLevel.LOW,
        details={"capacity": capacity, "refillRate": refill_rate},
    )


def check_endpoint_rate(ctx: RequestContext, pipeline) -> Decision:
    exceeded = pipeline.endpoint_limiter.check(ctx.path, ctx.identifier, ctx.now)
    if exceeded is None:
        return allow()
    rule, retry_after = exceeded
    return block(
        ctx, pipeline,
        reject(429, "ENDPOINT_RATE_LIMIT_EXCEEDED", "Too many requests to this endpoint", retry_after=retry_after),
        SecurityEventType.RATE_LIMIT_EXCEEDED, ThreatLevel.MEDIUM,
        details={"rule": rule.name, "limit": rule.max_requests, "window": rule.window_seconds},
    )

from .db import (
    Base,
    DeliveryConfig,
    DeliveryState,
    OwnedPrompt,
    PendingVerification,
    VerificationAttempt,
    as_utc,
    get_engine,
    get_session,
    create_all,
    dispose_engine,
    get_config,
    get_config_by_identity,
    list_active_configs,
    insert_config,
    update_config,
    claim_key_for,
    get_delivery_state,
    claim_delivery,
    commit_delivery,
    release_claim,
    insert_verification,
    find_live_verification,
    find_latest_verification_by_code,
    consume_verification,
    purge_expired_verifications,
    get_attempt,
    record_failed_attempt,
    clear_attempts,
    purge_stale_attempts,
    insert_owned_prompt,
    fetch_owned_prompt,
    get_owned_prompt,
    user_has_owned_prompts,
    append_owned_response,
)  # noqa: F401

"""Pipeline operations.

Sub-modules:
    base                 -- OperationOptions, AgentOperation contract
    phase_generation     -- plan the next phase
    phase_implementation -- stream a phase's files, start realtime fixes
    code_review          -- per-file, independently fixable findings
    realtime_fixer       -- surgical single-file fixer
    file_regeneration    -- review-driven surgical fixer
    fast_code_fixer      -- whole-codebase one-shot fixer
    screenshot_analysis  -- visual compliance and broken images
    user_conversation    -- conversational agent with history compaction
"""

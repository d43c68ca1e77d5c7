# CUI // SP-PROPIN
"""Document Context Engine — token-bounded context assembly for GovProposal.

Modules:
    models          — Document, Chunk, ScoredCandidate, ContextBundle, errors
    policy          — context_config.yaml loader, AllocationPolicy, BuildSettings
    tokens          — ceil(chars/4) estimator, optional tiktoken estimator
    allocator       — context / generation / buffer token split
    chunker         — heading/paragraph chunking with section labels
    scorer          — priority + relevance + section composite scores
    selector        — greedy overflow resolver (pins, ceilings, exclusion reasons)
    overflow        — overflow analysis, recommendations, audit statistics
    assembler       — bundle text with provenance headers, fingerprints
    cache           — project_contexts state machine (SQLite)
    context_service — debounced background builds and generation-time reads
    citations       — map generated text back to chunk provenance
"""

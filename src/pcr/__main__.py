from pcr.cli import main

raise SystemExit(main())
